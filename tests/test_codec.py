"""Tests for the markdown record codec."""

from datetime import datetime, timezone

import pytest

from issuebranch.codec import decode_issue, decode_legacy_issue, encode_issue, format_timestamp, normalize_body
from issuebranch.errors import InvalidFormatError
from issuebranch.models import Issue, Status

CREATED = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


def test_encode_minimal_issue() -> None:
    """Test the exact layout of a record with only required fields."""
    issue = Issue(id=1, title="Fix the bug", created=CREATED)
    assert encode_issue(issue) == (
        "---\ncreated: 2024-01-15T10:30:00Z\nid: 1\nstatus: open\n---\n\n# Fix the bug\n"
    )


def test_encode_orders_header_keys() -> None:
    """Test that header keys are alphabetical and absent fields are omitted."""
    issue = Issue(
        id=12,
        title="Task",
        created=CREATED,
        status=Status.IN_PROGRESS,
        session="s-1",
        assignee="alice",
        depends_on=[3, 4],
        body="Details here.\n",
    )
    text = encode_issue(issue)
    header = text.split("---\n")[1]
    keys = [line.split(":")[0] for line in header.splitlines() if not line.startswith("-")]
    assert keys == ["assignee", "created", "depends_on", "id", "session", "status"]
    assert "branch" not in header
    assert "epic" not in header
    assert text.endswith("# Task\n\nDetails here.\n")


def test_round_trip_all_fields() -> None:
    """Test decoding an encoded record with every field set."""
    issue = Issue(
        id=42,
        title="Überprüfung der Ausgabe ✓",
        created=CREATED,
        status=Status.WONT_FIX,
        assignee="bob",
        branch="feature/output",
        session="session: with colon",
        epic="2024",
        depends_on=[1, 7],
        body="Some *markdown*.\n\n---\n\nA horizontal rule above, 日本語 below.\n",
    )
    assert decode_issue(encode_issue(issue)) == issue


def test_round_trip_no_optional_fields() -> None:
    """Test decoding an encoded record with nothing optional set."""
    issue = Issue(id=3, title="Bare", created=CREATED)
    decoded = decode_issue(encode_issue(issue))
    assert decoded == issue
    assert encode_issue(decoded) == encode_issue(issue)


@pytest.mark.parametrize(
    ("body", "stored"),
    [
        ("", ""),
        ("no newline", "no newline\n"),
        ("\n\nleading blank lines\n", "leading blank lines\n"),
        ("\n\n", ""),
        ("kept\n\n", "kept\n\n"),
    ],
)
def test_body_normalization(body: str, stored: str) -> None:
    """Test that the body reads back exactly as normalize_body predicts."""
    assert normalize_body(body) == stored
    issue = Issue(id=4, title="Body", created=CREATED, body=body)
    assert decode_issue(encode_issue(issue)).body == stored


def test_decode_reads_timestamp_as_utc() -> None:
    """Test that the created timestamp decodes to an aware UTC datetime."""
    content = "---\ncreated: 2024-01-15T11:30:00+01:00\nid: 5\nstatus: done\n---\n\n# Done thing\n"
    issue = decode_issue(content)
    assert issue.created == CREATED
    assert issue.status == Status.DONE


def test_decode_accepts_status_synonyms() -> None:
    """Test that hand-edited status spellings are accepted."""
    content = "---\ncreated: 2024-01-15T10:30:00Z\nid: 5\nstatus: WIP\n---\n\n# Task\n"
    assert decode_issue(content).status == Status.IN_PROGRESS


@pytest.mark.parametrize(
    ("content", "reason"),
    [
        ("# Title only\n", "missing YAML front matter"),
        ("---\nid: 1\nstatus: open\n\n# Title\n", "unclosed YAML front matter"),
        ("---\ncreated: 2024-01-15T10:30:00Z\nid: 1\nstatus: open\n---\n\nNo heading\n", "missing title heading"),
        ("---\ncreated: 2024-01-15T10:30:00Z\nstatus: open\n---\n\n# T\n", "missing required field 'id'"),
        ("---\ncreated: 2024-01-15T10:30:00Z\nid: one\nstatus: open\n---\n\n# T\n", "id must be an integer"),
        ("---\ncreated: 2024-01-15T10:30:00Z\nid: 1\nstatus: blocked\n---\n\n# T\n", "Unknown status"),
        ("---\n- a\n- b\n---\n\n# T\n", "not a mapping"),
    ],
)
def test_decode_errors(content: str, reason: str) -> None:
    """Test that malformed records raise InvalidFormatError with a reason."""
    with pytest.raises(InvalidFormatError, match=reason):
        decode_issue(content)


def test_decode_legacy_title_in_header() -> None:
    """Test reading the older layout that kept the title in the header."""
    content = "---\nid: 7\ntitle: Old style\ncreated: 2024-01-15T10:30:00Z\nstatus: open\n---\n\nLegacy body.\n"
    with pytest.raises(InvalidFormatError):
        decode_issue(content)

    issue = decode_legacy_issue(content)
    assert issue is not None
    assert issue.id == 7
    assert issue.title == "Old style"
    assert issue.body == "Legacy body.\n"


def test_decode_legacy_drops_duplicate_heading() -> None:
    """Test that a heading repeating the header title is not kept in the body."""
    content = "---\nid: 7\ntitle: Old style\ncreated: 2024-01-15T10:30:00Z\nstatus: open\n---\n\n# Old style\n\nBody\n"
    issue = decode_legacy_issue(content)
    assert issue is not None
    assert issue.body == "Body\n"


def test_decode_legacy_rejects_current_format() -> None:
    """Test that current records are not mistaken for legacy ones."""
    content = encode_issue(Issue(id=1, title="New", created=CREATED))
    assert decode_legacy_issue(content) is None
    assert decode_legacy_issue("no front matter") is None


def test_format_timestamp() -> None:
    """Test UTC formatting with a trailing Z."""
    assert format_timestamp(CREATED) == "2024-01-15T10:30:00Z"
    assert format_timestamp(datetime(2024, 1, 15, 10, 30)) == "2024-01-15T10:30:00Z"
