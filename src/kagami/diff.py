"""Tree-to-tree diff between two resolved commits.

The walk compares directory entries by object id, so unchanged subtrees are
skipped without being read. Patch text is produced only when a caller asks
for it: a whole-repository diff can be large, and most callers only need
the list of changed paths.
"""

from __future__ import annotations

import difflib
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from git import Commit, Object, Tree

from .observability import timeit
from .store import ObjectStore

CONTEXT_LINES = 3
NULL_ID = "0" * 40


class ChangeKind(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


def is_binary(data: bytes) -> bool:
    """Git's heuristic: a NUL byte in the first 8000 bytes means binary."""
    return b"\x00" in data[:8000]


def split_lines(data: bytes) -> List[str]:
    """Decode ``data`` and split it on LF only, keeping the line endings.

    CR, form feed and the other characters ``str.splitlines`` breaks on are
    ordinary line content to git.
    """
    text = data.decode("utf-8", errors="replace")
    lines = [line + "\n" for line in text.split("\n")]
    lines[-1] = lines[-1][:-1]
    if not lines[-1]:
        lines.pop()
    return lines


@dataclass
class FileChange:
    """One changed path. ``patch`` is computed on first access."""

    path: str
    kind: ChangeKind
    old_mode: Optional[int]
    new_mode: Optional[int]
    old_binsha: Optional[bytes]
    new_binsha: Optional[bytes]
    _store: ObjectStore = field(repr=False, compare=False)
    _patch: Optional[str] = field(default=None, init=False, repr=False, compare=False)
    _counts: Tuple[int, int] = field(default=(0, 0), init=False, repr=False, compare=False)

    @property
    def old_id(self) -> Optional[str]:
        return self.old_binsha.hex() if self.old_binsha else None

    @property
    def new_id(self) -> Optional[str]:
        return self.new_binsha.hex() if self.new_binsha else None

    @property
    def patch(self) -> str:
        if self._patch is None:
            self._patch = self._render_patch()
        return self._patch

    def _content(self, binsha: Optional[bytes], mode: Optional[int]) -> bytes:
        # Submodule entries point at commits in another repository
        if binsha is None or mode is None or (mode >> 12) == 0o16:
            return b""
        return self._store.read_blob(binsha)

    def _render_patch(self) -> str:
        old_path = f"a/{self.path}" if self.kind is not ChangeKind.ADDED else "/dev/null"
        new_path = f"b/{self.path}" if self.kind is not ChangeKind.REMOVED else "/dev/null"
        header = [f"diff --git a/{self.path} b/{self.path}"]
        if self.kind is ChangeKind.ADDED:
            header.append(f"new file mode {self.new_mode:o}")
        elif self.kind is ChangeKind.REMOVED:
            header.append(f"deleted file mode {self.old_mode:o}")
        elif self.old_mode != self.new_mode:
            header.append(f"old mode {self.old_mode:o}")
            header.append(f"new mode {self.new_mode:o}")
        header.append(f"index {(self.old_id or NULL_ID)[:7]}..{(self.new_id or NULL_ID)[:7]}")

        old = self._content(self.old_binsha, self.old_mode)
        new = self._content(self.new_binsha, self.new_mode)
        if old == new:
            return "\n".join(header) + "\n"
        if is_binary(old) or is_binary(new):
            header.append(f"Binary files {old_path} and {new_path} differ")
            return "\n".join(header) + "\n"

        hunks = list(
            difflib.unified_diff(
                split_lines(old),
                split_lines(new),
                fromfile=old_path,
                tofile=new_path,
                n=CONTEXT_LINES,
            )
        )
        # First two lines are the ---/+++ file header
        self._counts = (
            sum(1 for line in hunks[2:] if line.startswith("+")),
            sum(1 for line in hunks[2:] if line.startswith("-")),
        )
        body = []
        for line in hunks:
            body.append(line if line.endswith("\n") else line + "\n\\ No newline at end of file\n")
        return "\n".join(header) + "\n" + "".join(body)

    def line_counts(self) -> tuple[int, int]:
        """(insertions, deletions) in the patch; binary changes count as zero."""
        if self._patch is None:
            self._patch = self._render_patch()
        return self._counts


@dataclass(frozen=True)
class DiffStats:
    files_changed: int
    insertions: int
    deletions: int

    def __str__(self) -> str:
        return (
            f"{self.files_changed} files changed, "
            f"{self.insertions} insertions(+), {self.deletions} deletions(-)"
        )


class Diff(Sequence[FileChange]):
    """Ordered, immutable list of per-path changes between two commits."""

    def __init__(self, old_commit: Commit, new_commit: Commit, changes: List[FileChange]):
        self.old_commit = old_commit
        self.new_commit = new_commit
        self._changes = sorted(changes, key=lambda c: c.path)

    def __getitem__(self, index):  # type: ignore[override]
        return self._changes[index]

    def __len__(self) -> int:
        return len(self._changes)

    def __repr__(self) -> str:
        return (
            f"Diff({self.old_commit.hexsha[:7]}..{self.new_commit.hexsha[:7]}, "
            f"{len(self._changes)} changes)"
        )

    @property
    def is_empty(self) -> bool:
        return not self._changes

    @property
    def paths(self) -> List[str]:
        return [c.path for c in self._changes]

    def _of_kind(self, kind: ChangeKind) -> List[FileChange]:
        return [c for c in self._changes if c.kind is kind]

    @property
    def added(self) -> List[FileChange]:
        return self._of_kind(ChangeKind.ADDED)

    @property
    def removed(self) -> List[FileChange]:
        return self._of_kind(ChangeKind.REMOVED)

    @property
    def modified(self) -> List[FileChange]:
        return self._of_kind(ChangeKind.MODIFIED)

    def get(self, path: str) -> Optional[FileChange]:
        for change in self._changes:
            if change.path == path:
                return change
        return None

    def patches(self) -> Iterator[str]:
        """Yield patch text per change, rendering each only when reached."""
        for change in self._changes:
            yield change.patch

    def patch_text(self) -> str:
        return "".join(self.patches())

    def stats(self) -> DiffStats:
        insertions = deletions = 0
        for change in self._changes:
            ins, dels = change.line_counts()
            insertions += ins
            deletions += dels
        return DiffStats(len(self._changes), insertions, deletions)


class DiffEngine:
    """Computes :class:`Diff` objects from already-resolved commits."""

    def __init__(self, store: ObjectStore):
        self.store = store

    def diff(self, commit_a: Commit, commit_b: Commit) -> Diff:
        """Changes that turn ``commit_a``'s snapshot into ``commit_b``'s."""
        with timeit("diff", old=commit_a.hexsha, new=commit_b.hexsha) as info:
            tree_a = self.store.load_tree(commit_a)
            tree_b = self.store.load_tree(commit_b)
            changes: List[FileChange] = []
            if tree_a.binsha != tree_b.binsha:
                self._diff_trees(tree_a, tree_b, changes)
            info["changes"] = len(changes)
        return Diff(commit_a, commit_b, changes)

    def _entries(self, tree: Optional[Tree]) -> Dict[str, Object]:
        if tree is None:
            return {}
        return {item.path: item for item in self.store.tree_items(tree)}

    def _diff_trees(self, tree_a: Optional[Tree], tree_b: Optional[Tree], out: List[FileChange]) -> None:
        entries_a = self._entries(tree_a)
        entries_b = self._entries(tree_b)

        for path in sorted(entries_a.keys() | entries_b.keys()):
            a = entries_a.get(path)
            b = entries_b.get(path)

            if a is not None and b is not None and a.binsha == b.binsha and a.mode == b.mode:
                continue

            a_is_tree = a is not None and a.type == "tree"
            b_is_tree = b is not None and b.type == "tree"

            if a_is_tree and b_is_tree:
                self._diff_trees(a, b, out)  # type: ignore[arg-type]
                continue

            if a is not None and b is not None and not a_is_tree and not b_is_tree:
                out.append(self._change(path, ChangeKind.MODIFIED, a, b))
                continue

            # Present on one side only, or a file/directory swap
            if a is not None:
                if a_is_tree:
                    self._diff_trees(a, None, out)  # type: ignore[arg-type]
                else:
                    out.append(self._change(path, ChangeKind.REMOVED, a, None))
            if b is not None:
                if b_is_tree:
                    self._diff_trees(None, b, out)  # type: ignore[arg-type]
                else:
                    out.append(self._change(path, ChangeKind.ADDED, None, b))

    def _change(self, path: str, kind: ChangeKind, a: Optional[Object], b: Optional[Object]) -> FileChange:
        return FileChange(
            path=path,
            kind=kind,
            old_mode=a.mode if a is not None else None,
            new_mode=b.mode if b is not None else None,
            old_binsha=a.binsha if a is not None else None,
            new_binsha=b.binsha if b is not None else None,
            _store=self.store,
        )
