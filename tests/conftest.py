"""Shared fixtures: throw-away git repositories and an isolated home directory."""

from collections.abc import Callable
from pathlib import Path

import pygit2
import pytest

from issuebranch.config import Settings


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the global home at a temporary directory and clear overrides."""
    home = tmp_path / "home"
    monkeypatch.setenv("ISSUEBRANCH_HOME", str(home))
    for name in (
        "ISSUEBRANCH_DATA_BRANCH",
        "ISSUEBRANCH_MERGE_BRANCH",
        "ISSUEBRANCH_ASSIGNEE",
        "ISSUEBRANCH_EDITOR",
        "EDITOR",
        "VISUAL",
    ):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture
def repo(tmp_path: Path) -> pygit2.Repository:
    """An empty repository whose unborn HEAD is `main`."""
    repo = pygit2.init_repository(str(tmp_path / "repo"), initial_head="main")
    repo.config["user.name"] = "Test User"
    repo.config["user.email"] = "test@example.com"
    return repo


@pytest.fixture
def workdir(repo: pygit2.Repository) -> Path:
    return Path(repo.workdir)


@pytest.fixture
def settings(isolated_env: Path) -> Settings:
    return Settings(home=isolated_env)


CommitFile = Callable[..., pygit2.Oid]


@pytest.fixture
def commit_file(repo: pygit2.Repository) -> CommitFile:
    """Commit a file through the working directory and index onto HEAD."""

    def commit(path: str, content: str, message: str = "Commit") -> pygit2.Oid:
        target = Path(repo.workdir) / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        repo.index.add(path)
        repo.index.write()
        tree = repo.index.write_tree()
        parents = [] if repo.head_is_unborn else [repo.head.target]
        signature = repo.default_signature
        return repo.create_commit("HEAD", signature, signature, message, tree, parents)

    return commit
