"""Resolution of ``<remote>/<branch>`` tracking refs to commits."""

from __future__ import annotations

from git import Commit

from .errors import AmbiguousOrNonCommit, RefNotFound
from .observability import timeit
from .store import ObjectStore


class ObjectResolver:
    """Reads tracking refs from the store.

    Nothing is cached: remote heads move on every fetch, so each call reads
    the ref file again.
    """

    def __init__(self, store: ObjectStore):
        self.store = store

    @staticmethod
    def tracking_ref_path(remote_name: str, branch: str) -> str:
        return f"refs/remotes/{remote_name}/{branch}"

    def resolve_head(self, remote_name: str, branch: str) -> Commit:
        """Return the commit ``<remote_name>/<branch>`` currently points at.

        Raises:
            RefNotFound: The tracking ref does not exist (never fetched, or
                the branch is absent on the remote)
            AmbiguousOrNonCommit: The ref points at a tag object, tree or blob
        """
        label = f"{remote_name}/{branch}"
        with timeit("resolve.head", ref=label) as info:
            obj = self.store.resolve_ref(self.tracking_ref_path(remote_name, branch))
            if obj is None:
                raise RefNotFound(label)
            if obj.type != "commit":
                raise AmbiguousOrNonCommit(label, obj.type)
            info["commit"] = obj.hexsha
        return obj  # type: ignore[return-value]
