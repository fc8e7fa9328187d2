"""Error types for issuebranch.

Every error raised deliberately by the core derives from `IssueBranchError`.
Failures of the underlying storage (`pygit2.GitError`, `sqlite3.Error`,
`OSError`) are not wrapped and propagate unchanged.
"""

from pathlib import Path

EXIT_ERROR = 1
EXIT_CONFLICT = 2


class IssueBranchError(Exception):
    """Base class for issuebranch errors."""

    exit_code = EXIT_ERROR


class NotInGitRepoError(IssueBranchError, LookupError):
    def __init__(self, path: Path | str | None = None) -> None:
        self.path = path
        super().__init__("Not in a git repository")


class NotInitializedError(IssueBranchError, LookupError):
    def __init__(self) -> None:
        super().__init__("Project not initialized. Run 'ib init' first.")


class IssueNotFoundError(IssueBranchError, LookupError):
    def __init__(self, issue_id: int) -> None:
        self.issue_id = issue_id
        super().__init__(f"Issue {issue_id} not found")


class BranchNotFoundError(IssueBranchError, LookupError):
    def __init__(self, branch: str) -> None:
        self.branch = branch
        super().__init__(f"Branch '{branch}' not found")


class LedgerNotFoundError(IssueBranchError, LookupError):
    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Ledger not found at {path}. Run 'ib init' to fix.")


class NotClaimedError(IssueBranchError, LookupError):
    def __init__(self, issue_id: int) -> None:
        self.issue_id = issue_id
        super().__init__(f"Issue {issue_id} is not claimed")


class AlreadyDoneError(IssueBranchError):
    def __init__(self, issue_id: int) -> None:
        self.issue_id = issue_id
        super().__init__(f"Issue {issue_id} is already done")


class InvalidFormatError(IssueBranchError, ValueError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid issue format: {reason}")


class EditorError(IssueBranchError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Editor failed: {reason}")


class ConflictError(IssueBranchError):
    """A competing claim or diverging content that the caller must resolve."""

    exit_code = EXIT_CONFLICT


class AlreadyClaimedError(ConflictError):
    def __init__(self, issue_id: int, assignee: str) -> None:
        self.issue_id = issue_id
        self.assignee = assignee
        super().__init__(f"Issue {issue_id} is already claimed by {assignee}")


class MergeConflictError(ConflictError):
    def __init__(self, source: str, target: str, paths: list[str]) -> None:
        self.source = source
        self.target = target
        self.paths = paths
        detail = f": {', '.join(paths)}" if paths else ""
        super().__init__(f"Merge conflict merging '{source}' into '{target}'{detail}")


class CherryPickConflictError(ConflictError):
    def __init__(self, commit: str, paths: list[str]) -> None:
        self.commit = commit
        self.paths = paths
        detail = f": {', '.join(paths)}" if paths else ""
        super().__init__(f"Conflict applying commit {commit[:10]} to the checkout{detail}")


class ConcurrentUpdateError(ConflictError):
    def __init__(self, branch: str) -> None:
        self.branch = branch
        super().__init__(f"Branch '{branch}' was updated concurrently; retry the operation")
