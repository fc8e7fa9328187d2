"""Tests for the object store interface and its record helpers."""

from datetime import datetime, timezone

import pytest

from issuebranch.codec import encode_issue
from issuebranch.errors import InvalidFormatError, IssueNotFoundError
from issuebranch.models import Issue
from issuebranch.store import ISSUES_DIR, ObjectStore, is_record_name, issue_filename, issue_relative_path

CREATED = datetime(2024, 1, 28, 9, 0, tzinfo=timezone.utc)


class MemoryStore(ObjectStore):
    """In-memory store for testing: one flat path->content mapping per branch."""

    def __init__(self) -> None:
        """Initialize memory store."""
        self.branches: dict[str, dict[str, bytes]] = {}
        self.commits = 0

    def branch_exists(self, branch: str) -> bool:
        """Check whether a branch exists."""
        return branch in self.branches

    def read_file(self, branch: str, path: str) -> bytes | None:
        """Read a file."""
        return self.branches.get(branch, {}).get(path)

    def write_file(self, branch: str, path: str, content: bytes, message: str) -> str | None:
        """Write a file."""
        files = self.branches.setdefault(branch, {})
        if files.get(path) == content:
            return None
        files[path] = content
        self.commits += 1
        return f"commit-{self.commits}"

    def remove_file(self, branch: str, path: str, message: str) -> str | None:
        """Remove a file."""
        files = self.branches.get(branch, {})
        if path not in files:
            return None
        del files[path]
        self.commits += 1
        return f"commit-{self.commits}"

    def list_files(self, branch: str, directory: str) -> list[str]:
        """List files directly inside a directory."""
        prefix = f"{directory}/"
        names = [path[len(prefix) :] for path in self.branches.get(branch, {}) if path.startswith(prefix)]
        return sorted(name for name in names if "/" not in name)


def put(store: MemoryStore, issue: Issue, name: str | None = None) -> str:
    path = f"{ISSUES_DIR}/{name}" if name else issue_relative_path(issue)
    store.write_file("data", path, encode_issue(issue).encode(), "write")
    return path


def test_issue_filename() -> None:
    """Test the dated, zero-padded record name."""
    issue = Issue(id=7, title="Task", created=CREATED)
    assert issue_filename(issue) == "2024-01-28-issue-007.md"
    assert issue_relative_path(issue) == ".issuebranch/2024-01-28-issue-007.md"
    assert issue_filename(Issue(id=1234, title="Big", created=CREATED)) == "2024-01-28-issue-1234.md"


def test_is_record_name() -> None:
    """Test which directory entries count as records."""
    assert is_record_name("2024-01-28-issue-007.md")
    assert is_record_name("7.md")
    assert not is_record_name(".hidden.md")
    assert not is_record_name("metadata.yaml")


def test_find_issue_path_by_suffix() -> None:
    """Test locating a record by its ID suffix."""
    store = MemoryStore()
    path = put(store, Issue(id=7, title="Task", created=CREATED))
    put(store, Issue(id=17, title="Other", created=CREATED))
    assert store.find_issue_path("data", 7) == path
    assert store.find_issue_path("data", 8) is None


def test_find_issue_path_legacy_name() -> None:
    """Test the fallback to bare numeric filenames."""
    store = MemoryStore()
    put(store, Issue(id=3, title="Old", created=CREATED), name="3.md")
    assert store.find_issue_path("data", 3) == f"{ISSUES_DIR}/3.md"


def test_find_issue_path_missing_branch() -> None:
    """Test locating on a branch that does not exist."""
    assert MemoryStore().find_issue_path("nope", 1) is None


def test_load_issue() -> None:
    """Test loading an issue together with its path."""
    store = MemoryStore()
    issue = Issue(id=2, title="Task", created=CREATED, body="Body\n")
    path = put(store, issue)
    loaded, loaded_path = store.load_issue("data", 2)
    assert loaded == issue
    assert loaded_path == path


def test_load_issue_not_found() -> None:
    """Test loading an unknown issue."""
    with pytest.raises(IssueNotFoundError, match="Issue 9 not found"):
        MemoryStore().load_issue("data", 9)


def test_load_issue_invalid_content() -> None:
    """Test loading a record that does not decode."""
    store = MemoryStore()
    store.write_file("data", f"{ISSUES_DIR}/2024-01-28-issue-001.md", b"not a record", "write")
    with pytest.raises(InvalidFormatError):
        store.load_issue("data", 1)

    store.write_file("data", f"{ISSUES_DIR}/2024-01-28-issue-002.md", b"\xff\xfe", "write")
    with pytest.raises(InvalidFormatError, match="UTF-8"):
        store.load_issue("data", 2)


def test_iter_issues_skips_bad_files() -> None:
    """Test that scans skip undecodable, hidden and non-record files."""
    store = MemoryStore()
    put(store, Issue(id=1, title="One", created=CREATED))
    put(store, Issue(id=2, title="Two", created=CREATED))
    store.write_file("data", f"{ISSUES_DIR}/2024-01-28-issue-003.md", b"garbage", "write")
    store.write_file("data", f"{ISSUES_DIR}/.draft.md", b"garbage", "write")
    store.write_file("data", f"{ISSUES_DIR}/metadata.yaml", b"project_id: x\n", "write")

    ids = sorted(issue.id for issue, _ in store.iter_issues("data"))
    assert ids == [1, 2]
