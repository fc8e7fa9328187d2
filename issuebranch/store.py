"""Object store interface for issue records."""

from abc import ABC, abstractmethod
from collections.abc import Iterator

import structlog

from issuebranch.codec import decode_issue
from issuebranch.errors import InvalidFormatError, IssueNotFoundError
from issuebranch.models import Issue

logger = structlog.get_logger()

ISSUES_DIR = ".issuebranch"


def issue_filename(issue: Issue) -> str:
    """Dated filename for an issue, e.g. `2024-01-28-issue-001.md`."""
    return f"{issue.created.strftime('%Y-%m-%d')}-issue-{issue.id:03}.md"


def issue_relative_path(issue: Issue) -> str:
    """Path of an issue file relative to the repository root."""
    return f"{ISSUES_DIR}/{issue_filename(issue)}"


def is_record_name(name: str) -> bool:
    return name.endswith(".md") and not name.startswith(".")


class ObjectStore(ABC):
    """Abstract base class for branch-addressed record storage.

    Every operation addresses a branch by name and never touches a checkout.
    """

    @abstractmethod
    def branch_exists(self, branch: str) -> bool:
        """Check whether a branch exists."""
        pass

    @abstractmethod
    def read_file(self, branch: str, path: str) -> bytes | None:
        """Read a file from the tip of a branch.

        Returns None if the branch or the file does not exist.
        """
        pass

    @abstractmethod
    def write_file(self, branch: str, path: str, content: bytes, message: str) -> str | None:
        """Commit new content for a path on a branch.

        Creates the branch as an orphan if it does not exist yet.

        Returns:
            The new commit ID, or None if the content was unchanged
        """
        pass

    @abstractmethod
    def remove_file(self, branch: str, path: str, message: str) -> str | None:
        """Commit the removal of a path from a branch.

        Returns:
            The new commit ID, or None if the path was already absent
        """
        pass

    @abstractmethod
    def list_files(self, branch: str, directory: str) -> list[str]:
        """List the file names directly inside a directory of a branch."""
        pass

    def find_issue_path(self, branch: str, issue_id: int) -> str | None:
        """Locate the file holding an issue.

        Looks for the dated `*-issue-NNN.md` name first, then the legacy `N.md`.
        """
        names = self.list_files(branch, ISSUES_DIR)
        suffix = f"-issue-{issue_id:03}.md"
        for name in names:
            if name.endswith(suffix):
                return f"{ISSUES_DIR}/{name}"
        legacy = f"{issue_id}.md"
        if legacy in names:
            return f"{ISSUES_DIR}/{legacy}"
        return None

    def load_issue(self, branch: str, issue_id: int) -> tuple[Issue, str]:
        """Load an issue and the path it is stored at.

        Raises:
            IssueNotFoundError: If no file for the issue exists on the branch
            InvalidFormatError: If the file cannot be decoded
        """
        path = self.find_issue_path(branch, issue_id)
        if path is None:
            raise IssueNotFoundError(issue_id)
        content = self.read_file(branch, path)
        if content is None:
            raise IssueNotFoundError(issue_id)
        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidFormatError(f"{path} is not valid UTF-8") from e
        return decode_issue(text), path

    def iter_issues(self, branch: str) -> Iterator[tuple[Issue, str]]:
        """Yield every decodable issue on a branch with its path.

        Files that fail to decode are logged and skipped.
        """
        for name in self.list_files(branch, ISSUES_DIR):
            if not is_record_name(name):
                continue
            path = f"{ISSUES_DIR}/{name}"
            content = self.read_file(branch, path)
            if content is None:
                continue
            try:
                issue = decode_issue(content.decode("utf-8"))
            except (InvalidFormatError, UnicodeDecodeError) as e:
                logger.warning("Skipping undecodable issue file", path=path, error=str(e))
                continue
            yield issue, path
