"""Three-way merge of a source head into a destination head.

Lifecycle of a :class:`MergeEngine`::

    IDLE -> MERGING -> CLEAN    -> COMMITTED   (commit_if_clean)
                    -> BLOCKED                 (conflicts; nothing written to refs)

Paths are compared as ``(mode, object id)`` pairs against the merge base.
When both sides changed a regular text file, a line-level merge is tried
before the path is declared conflicted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from git import Actor, Commit, Tree
from git.exc import GitCommandError, ODBError
from merge3 import Merge3

from .diff import is_binary
from .errors import MergeAborted, StoreError, SyncError
from .observability import log_debug, log_warning, timeit
from .store import Entry, ObjectStore

REGULAR_MODES = (0o100644, 0o100755)

# Failures of the object store while merging or committing
STORE_ERRORS = (SyncError, GitCommandError, ODBError, OSError, ValueError)


class MergeState(str, Enum):
    IDLE = "idle"
    MERGING = "merging"
    CLEAN = "clean"
    BLOCKED = "blocked"
    COMMITTED = "committed"


@dataclass(frozen=True)
class EntryVersion:
    """One side's version of a path."""

    mode: int
    binsha: bytes

    @property
    def object_id(self) -> str:
        return self.binsha.hex()

    @classmethod
    def of(cls, entry: Optional[Entry]) -> Optional["EntryVersion"]:
        if entry is None:
            return None
        return cls(mode=entry[0], binsha=entry[1])


@dataclass(frozen=True)
class MergeConflict:
    """A path both sides changed incompatibly; ``None`` means absent on that side."""

    path: str
    base: Optional[EntryVersion]
    source: Optional[EntryVersion]
    destination: Optional[EntryVersion]
    reason: str = "content"


@dataclass
class MergeResult:
    source_id: str
    destination_id: str
    base_id: Optional[str]
    state: MergeState
    tree: Optional[Tree] = None
    conflicts: Tuple[MergeConflict, ...] = ()
    auto_merged: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def conflicted(self) -> bool:
        return bool(self.conflicts)

    @property
    def tree_id(self) -> Optional[str]:
        return self.tree.hexsha if self.tree is not None else None

    @property
    def conflicted_paths(self) -> List[str]:
        return [c.path for c in self.conflicts]


class MergeEngine:
    """Merges source into destination and commits onto a local branch.

    Args:
        store: Local mirror
        branch: Local branch advanced by :meth:`commit_if_clean`
        linear_history: Record only the destination head as parent
        text_merge: Try a line-level merge when both sides edited a text file
    """

    def __init__(
        self,
        store: ObjectStore,
        branch: str,
        *,
        linear_history: bool = False,
        text_merge: bool = True,
    ):
        self.store = store
        self.branch = branch
        self.linear_history = linear_history
        self.text_merge = text_merge
        self.state = MergeState.IDLE
        self.result: Optional[MergeResult] = None
        self._source: Optional[Commit] = None
        self._destination: Optional[Commit] = None

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def merge(self, source_head: Commit, destination_head: Commit) -> MergeResult:
        """Three-way merge ``source_head`` into ``destination_head``.

        Returns a result in state CLEAN or BLOCKED. Object-store failures
        raise :class:`MergeAborted` and leave the engine IDLE.
        """
        self.state = MergeState.MERGING
        self.result = None
        with timeit("merge", source=source_head.hexsha, destination=destination_head.hexsha) as info:
            try:
                result = self._merge(source_head, destination_head)
            except STORE_ERRORS as e:
                self.state = MergeState.IDLE
                raise MergeAborted(e) from e
            info["outcome"] = result.state.value
            info["conflicts"] = len(result.conflicts)
            info["auto_merged"] = len(result.auto_merged)

        self._source = source_head
        self._destination = destination_head
        self.result = result
        self.state = result.state
        return result

    def _merge(self, source: Commit, destination: Commit) -> MergeResult:
        base = self.store.merge_base(source, destination)
        if base is None:
            log_debug("No merge base; merging unrelated histories against an empty tree")

        base_map = self.store.flatten_tree(self.store.load_tree(base)) if base is not None else {}
        source_map = self.store.flatten_tree(self.store.load_tree(source))
        destination_map = self.store.flatten_tree(self.store.load_tree(destination))

        merged: Dict[str, Entry] = {}
        conflicts: List[MergeConflict] = []
        auto_merged: List[str] = []

        for path in sorted(base_map.keys() | source_map.keys() | destination_map.keys()):
            b = base_map.get(path)
            s = source_map.get(path)
            d = destination_map.get(path)

            if s == d:
                chosen = s
            elif s == b:
                chosen = d
            elif d == b:
                chosen = s
            else:
                chosen = self._merge_file(path, b, s, d) if self.text_merge else None
                if chosen is None:
                    conflicts.append(self._conflict(path, b, s, d, _reason(b, s, d)))
                    continue
                auto_merged.append(path)

            if chosen is not None:
                merged[path] = chosen

        for path in _file_directory_clashes(merged):
            conflicts.append(
                self._conflict(
                    path, base_map.get(path), source_map.get(path), destination_map.get(path), "file/directory"
                )
            )

        common = dict(
            source_id=source.hexsha,
            destination_id=destination.hexsha,
            base_id=base.hexsha if base is not None else None,
            auto_merged=tuple(auto_merged),
        )
        if conflicts:
            conflicts.sort(key=lambda c: c.path)
            for conflict in conflicts:
                log_debug("Merge conflict", path=conflict.path, reason=conflict.reason)
            return MergeResult(state=MergeState.BLOCKED, conflicts=tuple(conflicts), **common)

        tree = self.store.write_tree(merged)
        return MergeResult(state=MergeState.CLEAN, tree=tree, **common)

    def _conflict(
        self,
        path: str,
        b: Optional[Entry],
        s: Optional[Entry],
        d: Optional[Entry],
        reason: str,
    ) -> MergeConflict:
        return MergeConflict(
            path=path,
            base=EntryVersion.of(b),
            source=EntryVersion.of(s),
            destination=EntryVersion.of(d),
            reason=reason,
        )

    def _merge_file(
        self,
        path: str,
        b: Optional[Entry],
        s: Optional[Entry],
        d: Optional[Entry],
    ) -> Optional[Entry]:
        """Resolve a path both sides changed, or return None if it conflicts."""
        if b is None or s is None or d is None:
            return None
        if not all(entry[0] in REGULAR_MODES for entry in (b, s, d)):
            return None

        mode = _pick(b[0], s[0], d[0])
        if mode is None:
            return None

        if s[1] == d[1]:
            return mode, s[1]
        if s[1] == b[1]:
            return mode, d[1]
        if d[1] == b[1]:
            return mode, s[1]

        base_data = self.store.read_blob(b[1])
        source_data = self.store.read_blob(s[1])
        destination_data = self.store.read_blob(d[1])
        if any(is_binary(data) for data in (base_data, source_data, destination_data)):
            return None

        merged = _merge_lines(base_data, source_data, destination_data)
        if merged is None:
            return None
        log_debug("Auto-merged text changes", path=path)
        return mode, self.store.write_blob(merged)

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def commit_if_clean(self, signature: Actor, message: str) -> str:
        """Commit the merged tree onto the local branch and return the commit id.

        When the merge brings in nothing new for the destination, no commit
        is created and the destination head id is returned.
        """
        source = self._source
        destination = self._destination
        if (
            self.state is not MergeState.CLEAN
            or self.result is None
            or self.result.tree is None
            or source is None
            or destination is None
        ):
            raise MergeAborted(f"nothing to commit (merge state is {self.state.value})")
        tree = self.result.tree

        with timeit("merge.commit", branch=self.branch, linear=self.linear_history) as info:
            try:
                if self._up_to_date(source, destination, tree):
                    info["outcome"] = "up_to_date"
                    self.store.clear_merge_state()
                    self.state = MergeState.COMMITTED
                    return destination.hexsha

                parents = [destination] if self.linear_history else [destination, source]
                commit = self.store.create_commit(tree, parents, signature, signature, message)
                self._advance_branch(commit, message)
                self.store.clear_merge_state()
            except STORE_ERRORS as e:
                raise MergeAborted(e) from e
            info["commit"] = commit.hexsha

        self.state = MergeState.COMMITTED
        return commit.hexsha

    def _up_to_date(self, source: Commit, destination: Commit, tree: Tree) -> bool:
        if tree.binsha != destination.tree.binsha:
            return False
        if self.linear_history or source.binsha == destination.binsha:
            return True
        return self.store.is_ancestor(source, destination)

    def _advance_branch(self, commit: Commit, message: str) -> None:
        head = self.store.find_branch(self.branch)
        if head is None:
            raise StoreError(f"Local branch not found: {self.branch}", step="commit")
        previous = head.commit

        self.store.set_branch_commit(self.branch, commit, logmsg=f"kagami: {message}")
        if self.store.head_branch() != self.branch:
            return
        try:
            self.store.checkout_head()
        except StoreError:
            log_warning("Checkout after merge failed; restoring branch", branch=self.branch)
            self.store.set_branch_commit(self.branch, previous, logmsg="kagami: restore after failed checkout")
            raise


def _pick(base, source, destination):
    """Three-way choice for a scalar; None when both sides changed it differently."""
    if source == destination:
        return source
    if source == base:
        return destination
    if destination == base:
        return source
    return None


def _reason(b: Optional[Entry], s: Optional[Entry], d: Optional[Entry]) -> str:
    if b is None:
        return "add/add"
    if s is None or d is None:
        return "modify/delete"
    if s[0] != d[0] and s[1] == d[1]:
        return "mode"
    return "content"


def _merge_lines(base: bytes, source: bytes, destination: bytes) -> Optional[bytes]:
    """Line-level three-way merge; None if any region conflicts."""
    merger = Merge3(
        base.splitlines(keepends=True),
        destination.splitlines(keepends=True),
        source.splitlines(keepends=True),
    )
    out: List[bytes] = []
    for group in merger.merge_groups():
        kind = group[0]
        if kind == "conflict":
            return None
        out.extend(group[1])
    return b"".join(out)


def _file_directory_clashes(merged: Dict[str, Entry]) -> List[str]:
    """Paths that are files in ``merged`` while other merged paths lie beneath them."""
    directories = set()
    for path in merged:
        parts = path.split("/")[:-1]
        for i in range(1, len(parts) + 1):
            directories.add("/".join(parts[:i]))
    return sorted(path for path in merged if path in directories)
