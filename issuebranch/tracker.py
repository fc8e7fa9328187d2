"""Issue operations: the layer the CLI and other collaborators call.

Records are always written to the data branch first. Publishing the change
to the branch people work on (merge or cherry-pick) and keeping the working
copy in step with it happens afterwards, see `IssueTracker._publish`.
"""

import shlex
import subprocess
import tempfile
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

import structlog

from issuebranch.codec import decode_issue, decode_legacy_issue, encode_issue, normalize_body
from issuebranch.errors import AlreadyDoneError, EditorError, InvalidFormatError, IssueBranchError, NotClaimedError
from issuebranch.ledger import SCHEMA_VERSION, ClaimLedger
from issuebranch.models import BoardSummary, Claim, Issue, Status, SyncReport
from issuebranch.project import Project
from issuebranch.store import ISSUES_DIR, is_record_name, issue_filename, issue_relative_path

logger = structlog.get_logger()


@dataclass
class UpdateResult:
    """An issue after an update and the data-branch commit that stored it.

    `commit` is None when the update did not change the encoded record.
    """

    issue: Issue
    commit: str | None


class IssueTracker:
    """Issue operations for one project.

    The claim ledger is opened on first use and must be released with
    `close()` (or by using the tracker as a context manager).
    """

    def __init__(self, project: Project) -> None:
        self.project = project
        self.settings = project.settings
        self.store = project.store
        self.reconciler = project.reconciler
        self._ledger: ClaimLedger | None = None

    @property
    def ledger(self) -> ClaimLedger:
        if self._ledger is None:
            self._ledger = self.project.open_ledger()
        return self._ledger

    @property
    def data_branch(self) -> str:
        return self.settings.data_branch

    def close(self) -> None:
        if self._ledger is not None:
            self._ledger.close()
            self._ledger = None

    def __enter__(self) -> "IssueTracker":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # Publishing

    def _publish(self, path: str, commit: str | None, message: str, created: bool = False) -> None:
        """Carry a data-branch commit over to the checkout."""
        if commit is None:
            return

        if self.settings.data_only:
            self.reconciler.reconcile_working_copy(path)
            return

        merge_branch = self.settings.merge_branch
        head = self.reconciler.head_branch()
        old_tip = self.store.tip(merge_branch)
        new_tip = self.reconciler.merge(self.data_branch, merge_branch)

        if head == merge_branch:
            old_id = str(old_tip.id) if old_tip is not None else None
            self.reconciler.reconcile_paths(self.reconciler.changed_paths(old_id, new_tip))
        elif head == self.data_branch:
            self.reconciler.reconcile_working_copy(path)
        elif created and head is not None:
            self.reconciler.cherry_pick_to_checkout(commit, message)

    def _write(self, issue: Issue, path: str, message: str) -> str | None:
        """Store a record on the data branch without publishing it."""
        issue.body = normalize_body(issue.body)
        return self.store.write_file(self.data_branch, path, encode_issue(issue).encode("utf-8"), message)

    def _save(self, issue: Issue, path: str, message: str, created: bool = False) -> str | None:
        commit = self._write(issue, path, message)
        self._publish(path, commit, message, created=created)
        return commit

    # Records

    def create_issue(
        self,
        title: str,
        epic: str | None = None,
        body: str = "",
        depends_on: Iterable[int] = (),
        message: str | None = None,
    ) -> Issue:
        """Create an issue with the next free ID."""
        title = title.strip()
        if not title:
            raise ValueError("Issue title must not be empty")

        issue = Issue(id=self.ledger.next_issue_id(), title=title, epic=epic, body=body)
        issue.add_dependencies(list(depends_on))
        message = message or f"Create issue #{issue.id}: {title}"
        self._save(issue, issue_relative_path(issue), message, created=True)
        logger.info("Issue created", issue_id=issue.id, title=title)
        return issue

    def load_issue(self, issue_id: int) -> Issue:
        issue, _ = self.store.load_issue(self.data_branch, issue_id)
        return issue

    def update_issue(self, issue_id: int, mutator: Callable[[Issue], None], message: str) -> UpdateResult:
        """Load an issue, apply `mutator` to it and store the result."""
        issue, path = self.store.load_issue(self.data_branch, issue_id)
        mutator(issue)
        if issue.id != issue_id:
            raise ValueError(f"Issue ID cannot change (was {issue_id}, now {issue.id})")
        commit = self._save(issue, path, message)
        return UpdateResult(issue=issue, commit=commit)

    # Claims

    def claim(self, issue_id: int, assignee: str | None = None, session: str | None = None) -> Issue:
        """Claim an issue exclusively and mark it in progress.

        Raises:
            AlreadyClaimedError: If someone else holds the claim
        """
        assignee = assignee or self.settings.default_assignee
        if not assignee:
            raise IssueBranchError("No assignee given and no default_assignee configured")

        issue, path = self.store.load_issue(self.data_branch, issue_id)
        self.ledger.claim(issue_id, assignee)
        message = f"Claim issue #{issue_id} for {assignee}"
        try:
            issue.assignee = assignee
            issue.branch = self.reconciler.current_branch()
            if session is not None:
                issue.session = session
            if issue.status == Status.OPEN:
                issue.status = Status.IN_PROGRESS
            commit = self._write(issue, path, message)
        except BaseException:
            logger.error("Storing claim failed, releasing ledger row", issue_id=issue_id)
            self.ledger.release(issue_id)
            raise
        self._publish(path, commit, message)
        logger.info("Issue claimed", issue_id=issue_id, assignee=assignee, branch=issue.branch)
        return issue

    def release(self, issue_id: int) -> Issue:
        """Drop the claim on an issue and put it back to open.

        The record is stored before the ledger row is deleted, so a failed
        write leaves the claim held.

        Raises:
            NotClaimedError: If the issue has no claim
        """
        issue, path = self.store.load_issue(self.data_branch, issue_id)
        if self.ledger.get_claim(issue_id) is None:
            raise NotClaimedError(issue_id)

        previous = issue.assignee
        issue.assignee = None
        issue.session = None
        if issue.status == Status.IN_PROGRESS:
            issue.status = Status.OPEN
        message = f"Release issue #{issue_id}"
        commit = self._write(issue, path, message)
        self.ledger.release(issue_id)
        self._publish(path, commit, message)
        logger.info("Issue released", issue_id=issue_id, assignee=previous)
        return issue

    def list_claims(self) -> list[Claim]:
        return self.ledger.list_claims()

    # Field updates

    def mark_done(self, issue_id: int) -> UpdateResult:
        """Mark an issue as done. The claim is kept as a record of who did it."""

        def mutate(issue: Issue) -> None:
            if issue.status == Status.DONE:
                raise AlreadyDoneError(issue_id)
            issue.status = Status.DONE

        return self.update_issue(issue_id, mutate, f"Mark issue #{issue_id} done")

    def set_status(self, issue_id: int, status: Status | str) -> UpdateResult:
        status = Status.parse(status)

        def mutate(issue: Issue) -> None:
            issue.status = status

        return self.update_issue(issue_id, mutate, f"Set issue #{issue_id} status to {status}")

    def add_dependencies(self, issue_id: int, ids: Iterable[int]) -> UpdateResult:
        ids = list(ids)
        return self.update_issue(
            issue_id,
            lambda issue: issue.add_dependencies(ids),
            f"Add dependencies to issue #{issue_id}: {', '.join(str(i) for i in ids)}",
        )

    def remove_dependencies(self, issue_id: int, ids: Iterable[int]) -> UpdateResult:
        ids = list(ids)
        return self.update_issue(
            issue_id,
            lambda issue: issue.remove_dependencies(ids),
            f"Remove dependencies from issue #{issue_id}: {', '.join(str(i) for i in ids)}",
        )

    def set_session(self, issue_id: int, session: str | None) -> UpdateResult:
        def mutate(issue: Issue) -> None:
            issue.session = session

        return self.update_issue(issue_id, mutate, f"Set session on issue #{issue_id}")

    def edit_issue(self, issue_id: int, title: str | None = None, body: str | None = None) -> UpdateResult:
        """Replace the title and/or body, or open the record in the editor.

        With neither `title` nor `body` given, the configured editor is run on
        a temporary copy of the encoded record and the saved file is decoded.

        Raises:
            EditorError: If the editor cannot be started or exits non-zero
            InvalidFormatError: If the edited file no longer decodes
        """
        if title is None and body is None:
            return self._edit_in_editor(issue_id)

        def mutate(issue: Issue) -> None:
            if title is not None:
                issue.title = title
            if body is not None:
                issue.body = body

        return self.update_issue(issue_id, mutate, f"Edit issue #{issue_id}")

    def _edit_in_editor(self, issue_id: int) -> UpdateResult:
        issue, path = self.store.load_issue(self.data_branch, issue_id)
        with tempfile.TemporaryDirectory(prefix="issuebranch-") as tmp:
            edit_path = Path(tmp) / issue_filename(issue)
            edit_path.write_text(encode_issue(issue), encoding="utf-8")
            command = [*shlex.split(self.settings.editor), str(edit_path)]
            logger.debug("Launching editor", command=command)
            try:
                result = subprocess.run(command, check=False)
            except OSError as e:
                raise EditorError(f"could not run '{self.settings.editor}': {e}") from e
            if result.returncode != 0:
                raise EditorError(f"'{self.settings.editor}' exited with status {result.returncode}")
            edited = decode_issue(edit_path.read_text(encoding="utf-8"))

        if edited.id != issue_id:
            raise InvalidFormatError(f"id changed from {issue_id} to {edited.id}")
        commit = self._save(edited, path, f"Edit issue #{issue_id}")
        return UpdateResult(issue=edited, commit=commit)

    # Queries

    def all_issues(self) -> list[Issue]:
        return [issue for issue, _ in self.store.iter_issues(self.data_branch)]

    def list_issues(
        self,
        status: Status | str | None = None,
        epic: str | None = None,
        assignee: str | None = None,
    ) -> list[Issue]:
        """Issues matching every given filter, in-progress first, then by ID."""
        wanted = Status.parse(status) if status is not None else None
        issues = [
            issue
            for issue in self.all_issues()
            if (wanted is None or issue.status == wanted)
            and (epic is None or issue.epic == epic)
            and (assignee is None or issue.assignee == assignee)
        ]
        return sorted(issues, key=lambda issue: (issue.status.sort_priority, issue.id))

    def search(self, query: str) -> list[Issue]:
        """Case-insensitive substring search over titles and bodies."""
        needle = query.lower()
        matches = [issue for issue in self.all_issues() if needle in issue.title.lower() or needle in issue.body.lower()]
        return sorted(matches, key=lambda issue: issue.id)

    def board(self) -> BoardSummary:
        counts = {status: 0 for status in Status}
        for issue in self.all_issues():
            counts[issue.status] += 1
        return BoardSummary(
            project_id=self.project.metadata.project_id,
            open_count=counts[Status.OPEN],
            in_progress_count=counts[Status.IN_PROGRESS],
            done_count=counts[Status.DONE],
            wont_fix_count=counts[Status.WONT_FIX],
        )

    # Diagnostics

    def doctor(self) -> SyncReport:
        """Compare the ledger against the records on the data branch."""
        issues = self.all_issues()
        claimed = {claim.issue_id for claim in self.ledger.list_claims()}
        known = {issue.id for issue in issues}
        report = SyncReport(
            schema_version=self.ledger.schema_version(),
            expected_schema_version=SCHEMA_VERSION,
            issue_count=len(issues),
            next_issue_id=self.ledger.peek_next_issue_id(),
            max_issue_id=max(known, default=0),
            missing_claims=sorted(
                issue.id for issue in issues if issue.status == Status.IN_PROGRESS and issue.id not in claimed
            ),
            orphan_claims=sorted(claimed - known),
        )
        logger.debug("Doctor report", ok=report.is_ok, issues=report.issue_count)
        return report

    def repair(self) -> SyncReport:
        """Migrate legacy records, then recompute the ledger from the data branch.

        Returns:
            The report observed before the ledger was repaired, with the
            migration changes attached
        """
        migrations = self.migrate_legacy_records()
        report = self.doctor()
        report.migrations = migrations
        self.ledger.repair()
        logger.info("Repair finished", migrations=len(migrations), was_ok=report.is_ok)
        return report

    def migrate_legacy_records(self) -> list[str]:
        """Rewrite records stored in older layouts; returns one line per change."""
        changes: list[str] = []
        for name in self.store.list_files(self.data_branch, ISSUES_DIR):
            if not is_record_name(name):
                continue
            change = self._migrate_file(f"{ISSUES_DIR}/{name}", name)
            if change:
                changes.append(change)
        changes.extend(self._import_working_copy())
        return changes

    def _read_any(self, text: str) -> tuple[Issue | None, bool]:
        """Decode current or legacy content; returns (issue, is_legacy_layout)."""
        try:
            return decode_issue(text), False
        except InvalidFormatError:
            return decode_legacy_issue(text), True

    def _migrate_file(self, path: str, name: str) -> str | None:
        content = self.store.read_file(self.data_branch, path)
        if content is None:
            return None
        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Skipping non UTF-8 record", path=path)
            return None
        issue, legacy_layout = self._read_any(text)
        if issue is None:
            logger.warning("Skipping unrecognised record", path=path)
            return None

        encoded = encode_issue(issue).encode("utf-8")
        if name.removesuffix(".md").isdigit():
            new_path = issue_relative_path(issue)
            self.store.write_file(self.data_branch, new_path, encoded, f"Rename issue #{issue.id} file")
            self.store.remove_file(self.data_branch, path, f"Remove legacy file for issue #{issue.id}")
            logger.info("Renamed legacy record", old=path, new=new_path)
            return f"Renamed {name} -> {issue_filename(issue)}"
        if legacy_layout:
            self.store.write_file(self.data_branch, path, encoded, f"Migrate issue #{issue.id} title")
            logger.info("Migrated legacy header", path=path)
            return f"Moved title of issue #{issue.id} out of the header"
        return None

    def _import_working_copy(self) -> list[str]:
        """Commit records that exist only in the working copy's records directory."""
        records_dir = self.project.project_dir
        if not records_dir.is_dir():
            return []

        changes = []
        for file in sorted(records_dir.glob("*.md")):
            if not is_record_name(file.name):
                continue
            try:
                issue, _ = self._read_any(file.read_text(encoding="utf-8"))
            except UnicodeDecodeError:
                issue = None
            if issue is None:
                logger.warning("Skipping unrecognised working copy record", path=str(file))
                continue
            if self.store.find_issue_path(self.data_branch, issue.id) is not None:
                continue
            self.store.write_file(
                self.data_branch,
                issue_relative_path(issue),
                encode_issue(issue).encode("utf-8"),
                f"Import issue #{issue.id} from working copy",
            )
            logger.info("Imported working copy record", issue_id=issue.id)
            changes.append(f"Imported {file.name} into {self.data_branch}")
        return changes
