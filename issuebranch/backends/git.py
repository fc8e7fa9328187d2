"""Git object-store backend using pygit2.

Records are written straight into the object database: a blob for the new
content, a chain of rebuilt trees for the directories above it, and a commit
that advances `refs/heads/<branch>`. The working directory, the index and
HEAD are never touched.
"""

from pathlib import Path, PurePosixPath

import backoff
import pygit2
import structlog
from pygit2.enums import FileMode

from issuebranch.errors import ConcurrentUpdateError, NotInGitRepoError
from issuebranch.store import ObjectStore

logger = structlog.get_logger()

DEFAULT_AUTHOR_NAME = "issuebranch"
DEFAULT_AUTHOR_EMAIL = "issuebranch@localhost"

# A ref update loses when another writer advanced the branch in between.
WRITE_ATTEMPTS = 5
RETRY_FACTOR = 0.05


def _path_parts(path: str | Path) -> list[str]:
    parts = [part for part in PurePosixPath(str(path).replace("\\", "/")).parts if part not in ("", ".")]
    if not parts or parts[0] == "/" or ".." in parts:
        raise ValueError(f"Invalid repository path: {path!r}")
    return parts


def branch_ref(branch: str) -> str:
    return f"refs/heads/{branch}"


class GitObjectStore(ObjectStore):
    """Object store backed by the branches of a git repository."""

    def __init__(self, repo_path: Path | str) -> None:
        """Open the repository containing `repo_path`.

        Args:
            repo_path: Any path inside the repository

        Raises:
            NotInGitRepoError: If no repository can be discovered
        """
        discovered = pygit2.discover_repository(str(repo_path))
        if discovered is None:
            raise NotInGitRepoError(repo_path)
        self.repo = pygit2.Repository(discovered)
        logger.debug("Opened git object store", path=str(discovered))

    @property
    def workdir(self) -> Path | None:
        workdir = self.repo.workdir
        return Path(workdir) if workdir else None

    def signature(self) -> pygit2.Signature:
        """The configured user signature, or a fixed fallback identity."""
        try:
            return self.repo.default_signature
        except (KeyError, pygit2.GitError):
            return pygit2.Signature(DEFAULT_AUTHOR_NAME, DEFAULT_AUTHOR_EMAIL)

    def tip(self, branch: str) -> pygit2.Commit | None:
        """The commit a branch points at, or None if the branch does not exist."""
        reference = self.repo.references.get(branch_ref(branch))
        if reference is None:
            return None
        return reference.peel(pygit2.Commit)

    def branch_exists(self, branch: str) -> bool:
        return self.repo.references.get(branch_ref(branch)) is not None

    def read_file(self, branch: str, path: str) -> bytes | None:
        commit = self.tip(branch)
        if commit is None:
            return None
        try:
            entry = commit.tree["/".join(_path_parts(path))]
        except KeyError:
            return None
        if entry.type_str != "blob":
            return None
        return self.repo[entry.id].data

    def list_files(self, branch: str, directory: str) -> list[str]:
        commit = self.tip(branch)
        if commit is None:
            return []
        tree = self._subtree(commit.tree, "/".join(_path_parts(directory)))
        if tree is None:
            return []
        return sorted(entry.name for entry in tree if entry.type_str == "blob")

    def write_file(self, branch: str, path: str, content: bytes, message: str) -> str | None:
        return self._write_once(branch, _path_parts(path), content, message)

    def remove_file(self, branch: str, path: str, message: str) -> str | None:
        return self._remove_once(branch, _path_parts(path), message)

    @backoff.on_exception(backoff.expo, ConcurrentUpdateError, max_tries=WRITE_ATTEMPTS, factor=RETRY_FACTOR)
    def _write_once(self, branch: str, parts: list[str], content: bytes, message: str) -> str | None:
        blob_id = self.repo.create_blob(content)
        parent = self.tip(branch)
        tree_id = self._insert(parent.tree if parent is not None else None, parts, blob_id)

        if parent is not None and parent.tree_id == tree_id:
            logger.debug("Content unchanged, no commit", branch=branch, path="/".join(parts))
            return None

        parents = [parent.id] if parent is not None else []
        commit_id = self.commit_tree(branch, tree_id, parents, message)
        logger.info("Committed file to branch", branch=branch, path="/".join(parts), commit=str(commit_id))
        return str(commit_id)

    @backoff.on_exception(backoff.expo, ConcurrentUpdateError, max_tries=WRITE_ATTEMPTS, factor=RETRY_FACTOR)
    def _remove_once(self, branch: str, parts: list[str], message: str) -> str | None:
        parent = self.tip(branch)
        if parent is None:
            logger.debug("Branch absent, nothing to remove", branch=branch)
            return None
        tree_id = self._remove(parent.tree, parts)
        if tree_id is None:
            logger.debug("Path already absent", branch=branch, path="/".join(parts))
            return None

        commit_id = self.commit_tree(branch, tree_id, [parent.id], message)
        logger.info("Removed file from branch", branch=branch, path="/".join(parts), commit=str(commit_id))
        return str(commit_id)

    def commit_tree(self, branch: str, tree_id: pygit2.Oid, parents: list[pygit2.Oid], message: str) -> pygit2.Oid:
        """Create a commit and advance the branch to it.

        The ref only moves if it still points at `parents[0]` (or is still
        absent for a parentless commit).

        Raises:
            ConcurrentUpdateError: If another writer moved or locked the branch
        """
        signature = self.signature()
        try:
            return self.repo.create_commit(branch_ref(branch), signature, signature, message, tree_id, parents)
        except pygit2.GitError as e:
            current = self.tip(branch)
            expected = parents[0] if parents else None
            moved = (current.id if current is not None else None) != expected
            if moved or "lock" in str(e).lower():
                logger.debug("Branch moved during commit", branch=branch, error=str(e))
                raise ConcurrentUpdateError(branch) from e
            logger.error("Failed to create commit", branch=branch, error=str(e))
            raise

    def _subtree(self, tree: pygit2.Tree | None, path: str) -> pygit2.Tree | None:
        if tree is None:
            return None
        if not path:
            return tree
        try:
            entry = tree[path]
        except KeyError:
            return None
        if entry.type_str != "tree":
            return None
        return self.repo[entry.id]

    def _insert(self, tree: pygit2.Tree | None, parts: list[str], blob_id: pygit2.Oid) -> pygit2.Oid:
        """Return a tree equal to `tree` with `parts` pointing at the blob.

        Each level starts from the existing subtree (when there is one) so that
        sibling entries are preserved.
        """
        builder = self.repo.TreeBuilder(tree) if tree is not None else self.repo.TreeBuilder()
        name = parts[0]
        if len(parts) == 1:
            builder.insert(name, blob_id, FileMode.BLOB)
        else:
            subtree_id = self._insert(self._subtree(tree, name), parts[1:], blob_id)
            builder.insert(name, subtree_id, FileMode.TREE)
        return builder.write()

    def _remove(self, tree: pygit2.Tree, parts: list[str]) -> pygit2.Oid | None:
        """Return a tree without `parts`, or None if it is not there."""
        name = parts[0]
        if name not in tree:
            return None
        builder = self.repo.TreeBuilder(tree)
        if len(parts) == 1:
            builder.remove(name)
            return builder.write()

        subtree = self._subtree(tree, name)
        if subtree is None:
            return None
        subtree_id = self._remove(subtree, parts[1:])
        if subtree_id is None:
            return None
        # git has no empty directories
        if len(self.repo[subtree_id]) == 0:
            builder.remove(name)
        else:
            builder.insert(name, subtree_id, FileMode.TREE)
        return builder.write()
