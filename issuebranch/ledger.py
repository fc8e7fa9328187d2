"""SQLite claim ledger: atomic issue IDs and exclusive claims.

The ledger is a cache over the records on the data branch. Its contents can be
rebuilt at any time by rescanning that branch, so the database file lives
outside the repository and is never committed.
"""

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

import structlog

from issuebranch.codec import format_timestamp
from issuebranch.errors import AlreadyClaimedError, LedgerNotFoundError, NotClaimedError
from issuebranch.models import Claim, Issue
from issuebranch.store import ObjectStore

logger = structlog.get_logger()

SCHEMA_VERSION = 1

# Seconds a connection waits on another process's lock before failing.
BUSY_TIMEOUT = 30.0

_SCHEMA = """
DROP TABLE IF EXISTS claims;
DROP TABLE IF EXISTS state;
DROP TABLE IF EXISTS schema_version;

CREATE TABLE schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    next_issue_id INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE claims (
    issue_id INTEGER PRIMARY KEY,
    assignee TEXT NOT NULL,
    claimed_at TEXT NOT NULL
);
"""


class ClaimLedger:
    """Transactional ID allocation and claim bookkeeping for one project.

    Use `open` for normal commands (the ledger directory must already exist)
    and `open_or_create` when initializing a project.
    """

    def __init__(self, conn: sqlite3.Connection, store: ObjectStore | None, data_branch: str) -> None:
        self.conn = conn
        self.store = store
        self.data_branch = data_branch

    @classmethod
    def open(cls, db_path: Path, store: ObjectStore | None, data_branch: str) -> "ClaimLedger":
        """Open the ledger, rebuilding it if the schema is absent or stale.

        Raises:
            LedgerNotFoundError: If the ledger's parent directory does not exist
        """
        db_path = Path(db_path)
        if not db_path.parent.exists():
            raise LedgerNotFoundError(db_path)
        return cls._connect(db_path, store, data_branch)

    @classmethod
    def open_or_create(cls, db_path: Path, store: ObjectStore | None, data_branch: str) -> "ClaimLedger":
        """Open the ledger, creating its parent directory if needed."""
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return cls._connect(db_path, store, data_branch)

    @classmethod
    def _connect(cls, db_path: Path, store: ObjectStore | None, data_branch: str) -> "ClaimLedger":
        # Autocommit mode; transactions are opened explicitly with the locking mode they need.
        conn = sqlite3.connect(db_path, timeout=BUSY_TIMEOUT, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL")
        ledger = cls(conn, store, data_branch)
        logger.debug("Opened claim ledger", path=str(db_path))
        ledger.ensure_schema()
        return ledger

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "ClaimLedger":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def schema_version(self) -> int | None:
        """Version recorded in the ledger, None if the schema is absent."""
        return self._read_version(self.conn)

    @staticmethod
    def _read_version(conn: sqlite3.Connection) -> int | None:
        exists = conn.execute(
            "SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND name = 'schema_version'"
        ).fetchone()[0]
        if not exists:
            return None
        row = conn.execute("SELECT version FROM schema_version").fetchone()
        return row[0] if row else None

    def ensure_schema(self) -> None:
        """Rebuild the ledger when its schema is missing or out of date."""
        version = self.schema_version()
        if version != SCHEMA_VERSION:
            logger.info("Ledger schema stale, rebuilding", found=version, expected=SCHEMA_VERSION)
            self.rebuild()

    def rebuild(self) -> bool:
        """Recreate all tables from the data branch unless already current.

        The version is checked again under the exclusive lock because another
        process may have rebuilt in the meantime.

        Returns:
            True if the tables were rebuilt
        """
        self.conn.execute("BEGIN EXCLUSIVE")
        try:
            if self._read_version(self.conn) == SCHEMA_VERSION:
                self.conn.execute("COMMIT")
                logger.debug("Ledger already rebuilt by another process")
                return False
            # executescript() would commit first, so run the statements one by one
            for statement in _SCHEMA.strip().split(";"):
                if statement.strip():
                    self.conn.execute(statement)
            self.conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            claims, next_id = self._populate()
            self.conn.execute("COMMIT")
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        logger.info("Ledger rebuilt", claims=claims, next_issue_id=next_id)
        return True

    def repair(self) -> None:
        """Recompute claims and the ID counter from the data branch unconditionally."""
        self.conn.execute("BEGIN EXCLUSIVE")
        try:
            self.conn.execute("DELETE FROM claims")
            self.conn.execute("DELETE FROM state")
            claims, next_id = self._populate()
            self.conn.execute("COMMIT")
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        logger.info("Ledger repaired", claims=claims, next_issue_id=next_id)

    def _scan(self) -> list[Issue]:
        if self.store is None:
            return []
        issues = [issue for issue, _ in self.store.iter_issues(self.data_branch)]
        return sorted(issues, key=lambda issue: issue.id)

    def _populate(self) -> tuple[int, int]:
        """Fill `claims` and `state` from the scanned records.

        Claim timestamps are not stored in records, so the record's creation
        time stands in for them.
        """
        issues = self._scan()
        claims = 0
        for issue in issues:
            if issue.assignee:
                self.conn.execute(
                    "INSERT OR REPLACE INTO claims (issue_id, assignee, claimed_at) VALUES (?, ?, ?)",
                    (issue.id, issue.assignee, format_timestamp(issue.created)),
                )
                claims += 1
        next_id = max((issue.id for issue in issues), default=0) + 1
        self.conn.execute("INSERT INTO state (id, next_issue_id) VALUES (1, ?)", (next_id,))
        return claims, next_id

    def next_issue_id(self) -> int:
        """Atomically return the next issue ID and advance the counter."""
        row = self.conn.execute(
            "UPDATE state SET next_issue_id = next_issue_id + 1 WHERE id = 1 RETURNING next_issue_id - 1"
        ).fetchone()
        logger.debug("Allocated issue ID", issue_id=row[0])
        return row[0]

    def peek_next_issue_id(self) -> int:
        """The ID the next allocation will return."""
        return self.conn.execute("SELECT next_issue_id FROM state WHERE id = 1").fetchone()[0]

    def claim(self, issue_id: int, assignee: str) -> None:
        """Record an exclusive claim.

        Raises:
            AlreadyClaimedError: If the issue is already claimed; nothing changes
        """
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            row = self.conn.execute("SELECT assignee FROM claims WHERE issue_id = ?", (issue_id,)).fetchone()
            if row is not None:
                raise AlreadyClaimedError(issue_id, row[0])
            self.conn.execute(
                "INSERT INTO claims (issue_id, assignee, claimed_at) VALUES (?, ?, ?)",
                (issue_id, assignee, format_timestamp(datetime.now(timezone.utc))),
            )
            self.conn.execute("COMMIT")
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        logger.info("Claim recorded", issue_id=issue_id, assignee=assignee)

    def release(self, issue_id: int) -> None:
        """Remove a claim.

        Raises:
            NotClaimedError: If there was no claim to remove
        """
        cursor = self.conn.execute("DELETE FROM claims WHERE issue_id = ?", (issue_id,))
        if cursor.rowcount == 0:
            raise NotClaimedError(issue_id)
        logger.info("Claim released", issue_id=issue_id)

    def get_claim(self, issue_id: int) -> Claim | None:
        row = self.conn.execute(
            "SELECT issue_id, assignee, claimed_at FROM claims WHERE issue_id = ?", (issue_id,)
        ).fetchone()
        return _claim_from_row(row) if row else None

    def list_claims(self) -> list[Claim]:
        rows = self.conn.execute("SELECT issue_id, assignee, claimed_at FROM claims ORDER BY issue_id").fetchall()
        return [_claim_from_row(row) for row in rows]


def _claim_from_row(row: tuple[int, str, str]) -> Claim:
    return Claim(issue_id=row[0], assignee=row[1], claimed_at=datetime.fromisoformat(row[2]))
