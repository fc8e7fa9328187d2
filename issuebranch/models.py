"""Data models for issuebranch."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class Status(Enum):
    """Issue status.

    Parsing is liberal (several spellings are accepted), display is always the
    canonical kebab-case token stored in the record header.
    """

    OPEN = "open"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    WONT_FIX = "wont-fix"

    @classmethod
    def parse(cls, value: "str | Status") -> "Status":
        """Parse a status token, accepting common synonyms.

        Raises:
            ValueError: If the token is not a known status
        """
        if isinstance(value, Status):
            return value
        token = str(value).strip().lower().replace("_", "-").replace(" ", "-").replace("'", "")
        status = _STATUS_ALIASES.get(token)
        if status is None:
            raise ValueError(f"Unknown status: {value!r} (expected one of: {', '.join(s.value for s in cls)})")
        return status

    @property
    def sort_priority(self) -> int:
        """Listing priority, lower sorts first."""
        return _SORT_PRIORITY[self]

    def __str__(self) -> str:
        return self.value


_STATUS_ALIASES: dict[str, Status] = {
    "open": Status.OPEN,
    "todo": Status.OPEN,
    "in-progress": Status.IN_PROGRESS,
    "inprogress": Status.IN_PROGRESS,
    "wip": Status.IN_PROGRESS,
    "doing": Status.IN_PROGRESS,
    "done": Status.DONE,
    "closed": Status.DONE,
    "wont-fix": Status.WONT_FIX,
    "wontfix": Status.WONT_FIX,
}

_SORT_PRIORITY: dict[Status, int] = {
    Status.IN_PROGRESS: 0,
    Status.OPEN: 1,
    Status.DONE: 2,
    Status.WONT_FIX: 3,
}


def utc_now() -> datetime:
    """Current UTC time truncated to whole seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


@dataclass
class Issue:
    """A single tracked issue as stored on the data branch."""

    id: int
    title: str
    created: datetime = field(default_factory=utc_now)
    status: Status = Status.OPEN
    assignee: str | None = None
    branch: str | None = None
    session: str | None = None
    epic: str | None = None
    depends_on: list[int] = field(default_factory=list)
    body: str = ""

    def add_dependencies(self, ids: list[int]) -> None:
        """Add dependency IDs, skipping self references and duplicates."""
        for dep in ids:
            if dep != self.id and dep not in self.depends_on:
                self.depends_on.append(dep)
        self.depends_on.sort()

    def remove_dependencies(self, ids: list[int]) -> None:
        """Remove dependency IDs."""
        self.depends_on = [dep for dep in self.depends_on if dep not in ids]

    def to_dict(self) -> dict:
        """Plain dictionary form, used for JSON output."""
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "created": self.created.isoformat(),
            "assignee": self.assignee,
            "branch": self.branch,
            "session": self.session,
            "epic": self.epic,
            "depends_on": list(self.depends_on),
            "body": self.body,
        }


@dataclass(frozen=True)
class Claim:
    """A ledger row binding an issue to its assignee."""

    issue_id: int
    assignee: str
    claimed_at: datetime


@dataclass
class SyncReport:
    """Drift between the claim ledger and the records on the data branch."""

    schema_version: int | None
    expected_schema_version: int
    issue_count: int = 0
    next_issue_id: int | None = None
    max_issue_id: int = 0
    missing_claims: list[int] = field(default_factory=list)
    orphan_claims: list[int] = field(default_factory=list)
    # Changes applied by repair before the ledger was recomputed
    migrations: list[str] = field(default_factory=list)

    @property
    def schema_ok(self) -> bool:
        return self.schema_version == self.expected_schema_version

    @property
    def next_id_ok(self) -> bool:
        if self.issue_count == 0 or self.next_issue_id is None:
            return True
        return self.next_issue_id > self.max_issue_id

    @property
    def is_ok(self) -> bool:
        return self.schema_ok and self.next_id_ok and not self.missing_claims and not self.orphan_claims


@dataclass(frozen=True)
class BoardSummary:
    """Per-status counts for a project."""

    project_id: str
    open_count: int
    in_progress_count: int
    done_count: int
    wont_fix_count: int

    @property
    def total_count(self) -> int:
        return self.open_count + self.in_progress_count + self.done_count + self.wont_fix_count
