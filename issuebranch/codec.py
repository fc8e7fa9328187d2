"""Markdown issue files with a YAML header.

A record is stored as::

    ---
    created: 2024-01-15T10:30:00Z
    id: 1
    status: open
    ---

    # Title

    Body text.

Header fields are emitted in alphabetical order and optional fields are only
written when set, so encoding a decoded record reproduces the same bytes.
"""

from datetime import datetime, timezone
from typing import Any

import yaml

from issuebranch.errors import InvalidFormatError
from issuebranch.models import Issue, Status

MARKER = "---"
TITLE_PREFIX = "# "


class _HeaderDumper(yaml.SafeDumper):
    pass


def _represent_datetime(dumper: yaml.SafeDumper, value: datetime) -> yaml.Node:
    return dumper.represent_scalar("tag:yaml.org,2002:timestamp", format_timestamp(value))


_HeaderDumper.add_representer(datetime, _represent_datetime)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with a trailing Z."""
    value = _as_utc(value)
    return value.isoformat().replace("+00:00", "Z")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, str):
        try:
            return _as_utc(datetime.fromisoformat(value))
        except ValueError as e:
            raise InvalidFormatError(f"invalid created timestamp {value!r}") from e
    raise InvalidFormatError(f"invalid created timestamp {value!r}")


def _header(issue: Issue) -> dict[str, Any]:
    header: dict[str, Any] = {
        "created": _as_utc(issue.created),
        "id": issue.id,
        "status": issue.status.value,
    }
    if issue.assignee is not None:
        header["assignee"] = issue.assignee
    if issue.branch is not None:
        header["branch"] = issue.branch
    if issue.depends_on:
        header["depends_on"] = list(issue.depends_on)
    if issue.epic is not None:
        header["epic"] = issue.epic
    if issue.session is not None:
        header["session"] = issue.session
    return header


def normalize_body(body: str) -> str:
    """The body as it reads back after a round trip through the record format.

    Leading blank lines are dropped and a non-empty body ends with a newline.
    """
    body = body.lstrip("\n")
    if body and not body.endswith("\n"):
        body += "\n"
    return body


def encode_issue(issue: Issue) -> str:
    """Format an issue as markdown with a YAML header."""
    header = yaml.dump(
        _header(issue),
        Dumper=_HeaderDumper,
        sort_keys=True,
        default_flow_style=False,
        allow_unicode=True,
        width=float("inf"),
    )
    parts = [MARKER, "\n", header, MARKER, "\n", "\n", TITLE_PREFIX, issue.title, "\n"]
    body = normalize_body(issue.body)
    if body:
        parts.append("\n")
        parts.append(body)
    return "".join(parts)


def _split(content: str) -> tuple[str, str]:
    """Split content into (header text, remaining text)."""
    content = content.lstrip()
    lines = content.splitlines(keepends=True)
    if not lines or lines[0].rstrip("\r\n") != MARKER:
        raise InvalidFormatError("missing YAML front matter")
    for index in range(1, len(lines)):
        if lines[index].rstrip("\r\n") == MARKER:
            header = "".join(lines[1:index])
            rest = "".join(lines[index + 1 :])
            return header, rest.lstrip("\n")
    raise InvalidFormatError("unclosed YAML front matter")


def _load_header(text: str) -> dict[str, Any]:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise InvalidFormatError(f"unreadable YAML header ({e})") from e
    if not isinstance(data, dict):
        raise InvalidFormatError("YAML header is not a mapping")
    return data


def _split_title(rest: str) -> tuple[str, str] | None:
    if not rest.startswith(TITLE_PREFIX):
        return None
    title, _, body = rest[len(TITLE_PREFIX) :].partition("\n")
    return title.rstrip("\r"), body.lstrip("\n")


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    return None if value is None else str(value)


def _issue_from_header(data: dict[str, Any], title: str, body: str) -> Issue:
    for key in ("id", "created", "status"):
        if key not in data:
            raise InvalidFormatError(f"missing required field '{key}'")
    issue_id = data["id"]
    if not isinstance(issue_id, int) or isinstance(issue_id, bool):
        raise InvalidFormatError(f"id must be an integer, got {issue_id!r}")
    try:
        status = Status.parse(data["status"])
    except ValueError as e:
        raise InvalidFormatError(str(e)) from e
    depends_on = data.get("depends_on") or []
    if not isinstance(depends_on, list) or not all(isinstance(d, int) for d in depends_on):
        raise InvalidFormatError("depends_on must be a list of integers")

    return Issue(
        id=issue_id,
        title=title,
        created=_parse_timestamp(data["created"]),
        status=status,
        assignee=_optional_str(data, "assignee"),
        branch=_optional_str(data, "branch"),
        session=_optional_str(data, "session"),
        epic=_optional_str(data, "epic"),
        depends_on=list(depends_on),
        body=body,
    )


def decode_issue(content: str) -> Issue:
    """Parse an issue from markdown with a YAML header.

    Raises:
        InvalidFormatError: If the front matter or the title heading is missing,
            or a required header field is absent or malformed
    """
    header_text, rest = _split(content)
    data = _load_header(header_text)
    split = _split_title(rest)
    if split is None:
        raise InvalidFormatError("missing title heading (# Title)")
    title, body = split
    return _issue_from_header(data, title, body)


def decode_legacy_issue(content: str) -> Issue | None:
    """Parse a record written in the older layout with `title:` in the header.

    Returns None when the content is not in the legacy layout.
    """
    try:
        header_text, rest = _split(content)
        data = _load_header(header_text)
    except InvalidFormatError:
        return None
    title = data.pop("title", None)
    if title is None:
        return None
    title = str(title)
    heading = f"{TITLE_PREFIX}{title}"
    if rest.startswith(heading):
        rest = rest[len(heading) :].lstrip("\n")
    try:
        return _issue_from_header(data, title, rest)
    except InvalidFormatError:
        return None
