"""Adapter over GitPython exposing the object-store capabilities the engine uses.

The engine never shells out to git directly; everything goes through
:class:`ObjectStore` so that GitPython and gitdb exceptions are translated
into :mod:`kagami.errors` at one boundary.
"""

from __future__ import annotations

import os
from io import BytesIO
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from git import Actor, Commit, Head, IndexFile, Object, PushInfo, Remote, RemoteReference, Repo, Tree
from git.exc import BadName, BadObject, GitCommandError, InvalidGitRepositoryError, NoSuchPathError, ODBError
from git.index.typ import BaseIndexEntry, IndexEntry
from git.objects.blob import Blob
from git.refs.reference import Reference
from gitdb.base import IStream

from .errors import MissingObject, MissingTree, StoreError
from .observability import log_debug, log_warning

# (mode, binsha) of a single path in a flattened tree
Entry = Tuple[int, bytes]

MERGE_STATE_FILES = (
    "MERGE_HEAD",
    "MERGE_MSG",
    "MERGE_MODE",
    "MERGE_RR",
    "AUTO_MERGE",
    "CHERRY_PICK_HEAD",
    "REVERT_HEAD",
)

# Lookup failures raised by gitdb when an object is absent or unreadable
OBJECT_ERRORS = (BadName, BadObject, ODBError, ValueError, OSError)


class ObjectStore:
    """Local mirror repository owned by a single sync session.

    Attributes:
        path: Working directory of the mirror
        repo: Underlying GitPython repository
    """

    def __init__(self, repo: Repo):
        self.repo = repo
        self.path = Path(repo.working_tree_dir or repo.git_dir)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    def init_or_open(cls, path: Path | str) -> "ObjectStore":
        """Open the repository at ``path``, initializing it if absent."""
        path = Path(path).expanduser()
        try:
            repo = Repo(path)
            log_debug("Opened local mirror", path=str(path))
        except (InvalidGitRepositoryError, NoSuchPathError):
            try:
                repo = Repo.init(path, mkdir=True)
            except (GitCommandError, OSError) as e:
                raise StoreError(f"Cannot initialize mirror at {path}: {e}", step="open") from e
            log_debug("Initialized local mirror", path=str(path))
        if repo.bare:
            raise StoreError(f"Mirror at {path} is a bare repository", step="open")
        return cls(repo)

    def close(self) -> None:
        self.repo.close()

    # ------------------------------------------------------------------
    # Remotes
    # ------------------------------------------------------------------

    def find_remote(self, name: str) -> Optional[Remote]:
        for remote in self.repo.remotes:
            if remote.name == name:
                return remote
        return None

    def add_or_get_remote(self, name: str, url: str) -> Remote:
        """Return the remote called ``name``, creating it when missing."""
        remote = self.find_remote(name)
        if remote is None:
            return self.repo.create_remote(name, url)
        current = list(remote.urls)
        if url not in current:
            log_warning("Remote URL changed; updating", remote=name)
            remote.set_url(url)
        return remote

    def fetch(self, remote: Remote, refspec: str, env: Mapping[str, str]) -> None:
        """Fetch ``refspec`` from ``remote`` with extra environment variables.

        ``env`` is passed per call rather than through ``custom_environment``
        so that concurrent fetches never see each other's credentials.
        """
        remote.fetch(refspec, env=dict(env))

    def push(self, remote: Remote, refspec: str, env: Mapping[str, str]) -> List[PushInfo]:
        """Push ``refspec`` to ``remote``; one :class:`PushInfo` per ref."""
        return list(remote.push(refspec, env=dict(env)))

    # ------------------------------------------------------------------
    # Reading objects
    # ------------------------------------------------------------------

    def resolve_ref(self, path: str) -> Optional[Object]:
        """Return the object ``path`` (``refs/...``) points at, or None if absent."""
        ref = Reference(self.repo, path)
        try:
            return ref.object
        except ValueError:
            return None
        except (BadName, BadObject, ODBError) as e:
            raise MissingObject(path, str(e)) from e

    def load_tree(self, commit: Commit) -> Tree:
        """Return the root tree of ``commit`` with its entries loaded."""
        try:
            tree = commit.tree
        except OBJECT_ERRORS as e:
            raise MissingTree(commit.hexsha, f"tree of commit cannot be read: {e}") from e
        self.tree_items(tree)
        return tree

    def tree_items(self, tree: Tree) -> List[Object]:
        """List the direct children of ``tree`` (blobs, trees, submodules)."""
        try:
            return list(tree)
        except OBJECT_ERRORS as e:
            raise MissingTree(tree.hexsha, f"tree '{tree.path or '/'}' cannot be read: {e}") from e

    def flatten_tree(self, tree: Optional[Tree]) -> Dict[str, Entry]:
        """Map every non-tree path beneath ``tree`` to its (mode, binsha)."""
        flat: Dict[str, Entry] = {}
        if tree is None:
            return flat
        stack = [tree]
        while stack:
            current = stack.pop()
            for item in self.tree_items(current):
                if item.type == "tree":
                    stack.append(item)
                else:
                    flat[item.path] = (item.mode, item.binsha)
        return flat

    def read_blob(self, binsha: bytes) -> bytes:
        try:
            return self.repo.odb.stream(binsha).read()
        except OBJECT_ERRORS as e:
            raise MissingObject(binsha.hex(), str(e)) from e

    def merge_base(self, a: Commit, b: Commit) -> Optional[Commit]:
        """Nearest common ancestor of ``a`` and ``b``; None for unrelated histories."""
        bases = self.repo.merge_base(a, b)
        if not bases:
            return None
        if len(bases) > 1:
            log_debug("Multiple merge bases; using the first", count=len(bases))
        return bases[0]

    def is_ancestor(self, ancestor: Commit, descendant: Commit) -> bool:
        return self.repo.is_ancestor(ancestor, descendant)

    # ------------------------------------------------------------------
    # Writing objects
    # ------------------------------------------------------------------

    def write_blob(self, data: bytes) -> bytes:
        """Store ``data`` as a blob and return its binary sha."""
        istream = self.repo.odb.store(IStream(Blob.type, len(data), BytesIO(data)))
        return istream.binsha

    def write_tree(self, entries: Mapping[str, Entry]) -> Tree:
        """Write a tree containing exactly ``entries`` (path -> (mode, binsha)).

        An in-memory index is used so the repository's own index file is
        never touched.
        """
        index = IndexFile(self.repo)
        index.entries = {
            (path, 0): IndexEntry.from_base(BaseIndexEntry((mode, binsha, 0, path)))
            for path, (mode, binsha) in entries.items()
        }
        return index.write_tree()

    def create_commit(
        self,
        tree: Tree,
        parents: Sequence[Commit],
        author: Actor,
        committer: Actor,
        message: str,
    ) -> Commit:
        """Write a commit object without moving any ref."""
        return Commit.create_from_tree(
            self.repo,
            tree,
            message,
            parent_commits=list(parents),
            head=False,
            author=author,
            committer=committer,
        )

    # ------------------------------------------------------------------
    # Refs and working tree
    # ------------------------------------------------------------------

    def find_branch(self, name: str) -> Optional[Head]:
        for head in self.repo.heads:
            if head.name == name:
                return head
        return None

    def create_branch(self, name: str, commit: Commit, upstream: Optional[str] = None) -> Head:
        """Create (or move) local branch ``name`` to ``commit``.

        ``upstream`` is a ``<remote>/<branch>`` tracking ref recorded as the
        branch's upstream.
        """
        try:
            head = self.repo.create_head(name, commit, force=True)
            if upstream:
                head.set_tracking_branch(RemoteReference(self.repo, f"refs/remotes/{upstream}"))
        except (GitCommandError, OSError, ValueError) as e:
            raise StoreError(f"Cannot create branch '{name}': {e}", step="checkout") from e
        return head

    def set_branch_commit(self, name: str, commit: Commit, logmsg: str) -> None:
        head = self.find_branch(name)
        if head is None:
            raise StoreError(f"Local branch not found: {name}", step="commit")
        head.set_commit(commit, logmsg=logmsg)

    def set_head(self, head: Head) -> None:
        try:
            self.repo.head.reference = head
        except (OSError, ValueError) as e:
            raise StoreError(f"Cannot point HEAD at '{head.name}': {e}", step="checkout") from e

    def head_branch(self) -> Optional[str]:
        if self.repo.head.is_detached:
            return None
        return self.repo.head.reference.name

    def checkout_head(self) -> None:
        """Make index and working tree match HEAD."""
        try:
            self.repo.head.reset(index=True, working_tree=True)
        except GitCommandError as e:
            raise StoreError(f"Checkout failed: {e}", step="checkout") from e

    def clear_merge_state(self) -> List[str]:
        """Remove in-progress merge markers; returns the files removed."""
        removed = []
        git_dir = Path(self.repo.git_dir)
        for name in MERGE_STATE_FILES:
            marker = git_dir / name
            if marker.exists():
                os.remove(marker)
                removed.append(name)
        return removed
