"""Tests for the command line interface."""

import json
import sys
from pathlib import Path

import pytest

from issuebranch.cli import app, main_entry


@pytest.fixture
def in_repo(workdir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(workdir)
    return workdir


def run(capsys: pytest.CaptureFixture[str], *tokens: str) -> str:
    capsys.readouterr()
    app.meta(list(tokens))
    return capsys.readouterr().out


def test_init_create_show(in_repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test the basic command flow."""
    assert "Initialized project repo-" in run(capsys, "init")
    assert run(capsys, "create", "First issue", "--body", "Some details") == "Created issue #1: First issue\n"

    output = run(capsys, "show", "1")
    assert "Issue #1: First issue" in output
    assert "Status: open" in output
    assert "Some details" in output

    data = json.loads(run(capsys, "show", "1", "--json"))
    assert data["id"] == 1
    assert data["title"] == "First issue"


def test_claim_done_list(in_repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test claiming, finishing and listing."""
    run(capsys, "init")
    run(capsys, "create", "First issue")
    run(capsys, "create", "Second issue")

    assert run(capsys, "claim", "2", "--assignee", "alice") == "Claimed issue #2 for alice on main\n"
    assert run(capsys, "done", "1") == "Issue #1 marked done\n"

    lines = run(capsys, "list").splitlines()
    assert lines[0].startswith("#2")
    assert "(@alice)" in lines[0]
    assert lines[1].startswith("#1")

    listed = json.loads(run(capsys, "list", "--status", "done", "--json"))
    assert [item["id"] for item in listed] == [1]

    board = run(capsys, "board")
    assert "in-progress: 1" in board
    assert "total:       2" in board


def test_dep_commands(in_repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test dependency management."""
    run(capsys, "init")
    run(capsys, "create", "Task")
    run(capsys, "create", "Prerequisite")

    assert run(capsys, "dep", "add", "1", "2") == "Issue #1 depends on: #2\n"
    assert "#2 [open] Prerequisite" in run(capsys, "dep", "list", "1")
    assert run(capsys, "dep", "remove", "1", "2") == "Issue #1 depends on: nothing\n"


def test_config_commands(in_repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test reading and writing local configuration."""
    run(capsys, "init")
    assert run(capsys, "config", "set", "default_assignee", "robot") == "Set default_assignee = robot (local)\n"
    assert run(capsys, "config", "get", "default_assignee") == "default_assignee = robot\n"
    assert (in_repo / ".issuebranch" / "config.yaml").exists()

    run(capsys, "create", "Task")
    assert run(capsys, "claim", "1") == "Claimed issue #1 for robot on main\n"

    run(capsys, "config", "unset", "default_assignee")
    assert run(capsys, "config", "get", "default_assignee") == "default_assignee is not set\n"


def test_config_rejects_bad_settings(in_repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test that only recognised keys and usable branch names are stored."""
    run(capsys, "init")
    with pytest.raises(ValueError, match="Unknown configuration key 'colour'"):
        run(capsys, "config", "set", "colour", "blue")
    with pytest.raises(ValueError, match="not a valid branch name"):
        run(capsys, "config", "set", "merge_branch", "bad..name")
    with pytest.raises(ValueError, match="must be different"):
        run(capsys, "config", "set", "merge_branch", "data/issuebranch")
    with pytest.raises(ValueError, match="must not be empty"):
        run(capsys, "config", "set", "data_branch", "")
    assert not (in_repo / ".issuebranch" / "config.yaml").exists()

    assert run(capsys, "config", "get", "data_branch") == "data_branch is not set (default: data/issuebranch)\n"
    assert run(capsys, "config", "set", "merge_branch", "") == (
        "Set merge_branch =  (local)\nRecords will stay on the data branch only\n"
    )


def test_config_unknown_key_exit_code(
    in_repo: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test an unknown key is reported on stderr with exit code 1."""
    monkeypatch.setattr(sys, "argv", ["ib", "config", "get", "colour"])
    with pytest.raises(SystemExit) as excinfo:
        main_entry()
    assert excinfo.value.code == 1
    assert "Unknown configuration key" in capsys.readouterr().err


def test_doctor(in_repo: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test the doctor report on a healthy project."""
    run(capsys, "init")
    run(capsys, "create", "Task")
    output = run(capsys, "doctor")
    assert "Issues: 1" in output
    assert output.rstrip().endswith("OK")


def test_errors_exit_with_code(
    in_repo: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test domain errors are printed to stderr with their exit code."""
    monkeypatch.setattr(sys, "argv", ["ib", "show", "1"])
    with pytest.raises(SystemExit) as excinfo:
        main_entry()
    assert excinfo.value.code == 1
    assert "not initialized" in capsys.readouterr().err

    run(capsys, "init")
    run(capsys, "create", "Task")
    run(capsys, "claim", "1", "--assignee", "alice")

    monkeypatch.setattr(sys, "argv", ["ib", "claim", "1", "--assignee", "bob"])
    with pytest.raises(SystemExit) as excinfo:
        main_entry()
    assert excinfo.value.code == 2
    assert "already claimed by alice" in capsys.readouterr().err
