"""Branch reconciliation between the data branch and working branches."""

import backoff
import pygit2
import structlog
from pygit2.enums import CheckoutStrategy, DeltaStatus

from issuebranch.backends.git import RETRY_FACTOR, WRITE_ATTEMPTS, GitObjectStore, branch_ref
from issuebranch.errors import BranchNotFoundError, CherryPickConflictError, ConcurrentUpdateError, MergeConflictError

logger = structlog.get_logger()


def _conflict_paths(index: pygit2.Index) -> list[str]:
    paths: set[str] = set()
    for entries in index.conflicts:
        paths.update(entry.path for entry in entries if entry is not None)
    return sorted(paths)


class BranchReconciler:
    """Merge, fast-forward and cherry-pick on top of a `GitObjectStore`."""

    def __init__(self, store: GitObjectStore) -> None:
        self.store = store
        self.repo = store.repo

    def current_branch(self) -> str | None:
        """Short name of the checked-out branch, None if detached or unborn."""
        if self.repo.head_is_unborn or self.repo.head_is_detached:
            return None
        return self.repo.head.shorthand

    def head_branch(self) -> str | None:
        """Branch HEAD refers to, including an unborn one; None if detached."""
        if self.repo.head_is_detached:
            return None
        target = self.repo.references["HEAD"].target
        if not isinstance(target, str):
            return None
        return target.removeprefix("refs/heads/")

    def changed_paths(self, old_commit: str | None, new_commit: str) -> list[str]:
        """Paths that differ between two commits (everything if `old_commit` is None)."""
        new_tree = self.repo[new_commit].peel(pygit2.Tree)
        old_tree = self.repo[old_commit].peel(pygit2.Tree) if old_commit is not None else self._empty_tree()
        paths: set[str] = set()
        for delta in old_tree.diff_to_tree(new_tree).deltas:
            paths.add(delta.old_file.path)
            paths.add(delta.new_file.path)
        return sorted(paths)

    @backoff.on_exception(backoff.expo, ConcurrentUpdateError, max_tries=WRITE_ATTEMPTS, factor=RETRY_FACTOR)
    def merge(self, source: str, target: str, message: str | None = None) -> str:
        """Merge `source` into `target` without a checkout.

        Both tips are read afresh on every attempt, so losing a race against
        another writer of `target` is retried.

        Returns:
            The commit `target` points at afterwards

        Raises:
            BranchNotFoundError: If `source` does not exist
            MergeConflictError: If the trees conflict; nothing is changed
            ConcurrentUpdateError: If `target` kept moving through every retry
        """
        source_tip = self.store.tip(source)
        if source_tip is None:
            raise BranchNotFoundError(source)

        target_tip = self.store.tip(target)
        if target_tip is None:
            try:
                self.repo.references.create(branch_ref(target), source_tip.id)
            except (pygit2.AlreadyExistsError, pygit2.GitError) as e:
                raise ConcurrentUpdateError(target) from e
            logger.info("Created branch from source", source=source, target=target, commit=str(source_tip.id))
            return str(source_tip.id)

        if target_tip.id == source_tip.id or self.repo.descendant_of(target_tip.id, source_tip.id):
            logger.debug("Already merged", source=source, target=target)
            return str(target_tip.id)

        if self.repo.descendant_of(source_tip.id, target_tip.id):
            self._fast_forward(target, target_tip.id, source_tip.id)
            logger.info("Fast-forwarded branch", source=source, target=target, commit=str(source_tip.id))
            return str(source_tip.id)

        base_id = self.repo.merge_base(source_tip.id, target_tip.id)
        ancestor = self.repo[base_id].peel(pygit2.Tree) if base_id is not None else self._empty_tree()
        index = self.repo.merge_trees(ancestor, target_tip.tree, source_tip.tree)
        if index.conflicts is not None:
            paths = _conflict_paths(index)
            logger.error("Merge conflict", source=source, target=target, paths=paths)
            raise MergeConflictError(source, target, paths)

        tree_id = index.write_tree(self.repo)
        message = message or f"Merge branch '{source}' into '{target}'"
        commit_id = self.store.commit_tree(target, tree_id, [target_tip.id, source_tip.id], message)
        logger.info("Merged branch", source=source, target=target, commit=str(commit_id))
        return str(commit_id)

    def _fast_forward(self, target: str, expected: pygit2.Oid, new_target: pygit2.Oid) -> None:
        reference = self.repo.references.get(branch_ref(target))
        if reference is None or reference.target != expected:
            raise ConcurrentUpdateError(target)
        reference.set_target(new_target, f"issuebranch: fast-forward {target}")

    def _empty_tree(self) -> pygit2.Tree:
        return self.repo[self.repo.TreeBuilder().write()]

    def cherry_pick_to_checkout(self, commit_id: str, message: str | None = None) -> str | None:
        """Apply one commit's changes to the checked-out branch.

        Updates the working directory, the index and the branch tip together.
        On an unborn branch the commit's tree becomes the first, parentless
        commit.

        Returns:
            The new commit ID, or None if the change was already present

        Raises:
            CherryPickConflictError: If the change conflicts with the checkout;
                the working directory and index are left untouched
        """
        commit = self.repo[commit_id].peel(pygit2.Commit)
        message = message or commit.message

        if self.repo.head_is_unborn:
            head_tree = self._empty_tree()
            parents: list[pygit2.Oid] = []
            new_tree = commit.tree
        else:
            head = self.repo.head.peel(pygit2.Commit)
            head_tree = head.tree
            parents = [head.id]
            base = commit.parents[0].tree if commit.parents else self._empty_tree()
            index = self.repo.merge_trees(base, head_tree, commit.tree)
            if index.conflicts is not None:
                paths = _conflict_paths(index)
                logger.error("Cherry-pick conflict", commit=str(commit.id), paths=paths)
                raise CherryPickConflictError(str(commit.id), paths)
            new_tree = self.repo[index.write_tree(self.repo)]
            if new_tree.id == head_tree.id:
                logger.debug("Change already on checkout", commit=str(commit.id))
                return None

        self._apply_to_checkout(head_tree, new_tree, str(commit.id))
        new_id = self.repo.create_commit("HEAD", commit.author, self.store.signature(), message, new_tree.id, parents)
        logger.info("Cherry-picked commit onto checkout", commit=str(commit.id), new_commit=str(new_id))
        return str(new_id)

    def _apply_to_checkout(self, head_tree: pygit2.Tree, new_tree: pygit2.Tree, commit_id: str) -> None:
        """Write the paths that differ between two trees to the workdir and index."""
        deltas = list(head_tree.diff_to_tree(new_tree).deltas)
        paths = sorted({delta.new_file.path for delta in deltas} | {delta.old_file.path for delta in deltas})
        if not paths:
            return
        try:
            self.repo.checkout_tree(new_tree, strategy=CheckoutStrategy.SAFE, paths=paths)
        except pygit2.GitError as e:
            logger.error("Checkout refused to overwrite local changes", commit=commit_id, paths=paths)
            raise CherryPickConflictError(commit_id, paths) from e

        index = self.repo.index
        for delta in deltas:
            if delta.status == DeltaStatus.DELETED:
                index.remove(delta.old_file.path)
            else:
                index.add(delta.new_file.path)
        index.write()

    def reconcile_working_copy(self, path: str) -> None:
        """Make a working-directory path match the checkout tip.

        The path is restored from HEAD when HEAD tracks it and deleted
        otherwise, so the working directory never holds record content that
        the checkout does not.
        """
        self.reconcile_paths([path])

    def reconcile_paths(self, paths: list[str]) -> None:
        """`reconcile_working_copy` for several paths at once."""
        workdir = self.store.workdir
        if workdir is None or not paths:
            return

        head_tree = None if self.repo.head_is_unborn else self.repo.head.peel(pygit2.Tree)
        tracked = [path for path in paths if head_tree is not None and path in head_tree]
        untracked = [path for path in paths if path not in tracked]

        if tracked:
            self.repo.checkout_head(strategy=CheckoutStrategy.FORCE, paths=tracked)
            logger.debug("Restored working copy paths", paths=tracked)

        index = self.repo.index
        index_changed = False
        for path in untracked:
            target = workdir / path
            if target.is_file():
                target.unlink()
                logger.debug("Removed untracked working copy path", path=path)
            if path in index:
                index.remove(path)
                index_changed = True
        if index_changed:
            index.write()
