"""Exception taxonomy for kagami sync sessions.

Every failure raised by the engine derives from :class:`SyncError`. A merge
blocked by conflicts is *not* an error; it is reported through
``MergeResult.conflicted`` instead.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base exception for sync operations.

    Attributes:
        step: Session step that failed (``"fetch"``, ``"resolve"``, ...)
        endpoint: Name of the remote endpoint involved, if any
    """

    def __init__(self, message: str, *, step: Optional[str] = None, endpoint: Optional[str] = None):
        super().__init__(message)
        self.step = step
        self.endpoint = endpoint

    def attach(self, *, step: Optional[str] = None, endpoint: Optional[str] = None) -> "SyncError":
        """Record where the error happened without replacing existing context."""
        if self.step is None:
            self.step = step
        if self.endpoint is None:
            self.endpoint = endpoint
        return self

    def __str__(self) -> str:
        message = super().__str__()
        context = [f"{k}={v}" for k, v in (("step", self.step), ("endpoint", self.endpoint)) if v]
        if context:
            return f"{message} [{', '.join(context)}]"
        return message


class StoreError(SyncError):
    """Local mirror could not be opened, initialized or checked out."""


class FetchFailed(SyncError):
    """Network or authentication failure while fetching a remote branch."""

    def __init__(self, remote: str, cause: BaseException | str):
        self.remote = remote
        self.cause = cause
        super().__init__(f"Fetch from '{remote}' failed: {cause}", step="fetch", endpoint=remote)


class PushFailed(SyncError):
    """The destination refused the local branch, or could not be reached."""

    def __init__(self, remote: str, cause: BaseException | str):
        self.remote = remote
        self.cause = cause
        super().__init__(f"Push to '{remote}' failed: {cause}", step="push", endpoint=remote)


class RefNotFound(SyncError):
    """A ``<remote>/<branch>`` tracking ref does not exist."""

    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Reference not found: {ref}", step="resolve")


class AmbiguousOrNonCommit(SyncError):
    """A reference resolved to something other than a commit."""

    def __init__(self, ref: str, object_type: str):
        self.ref = ref
        self.object_type = object_type
        super().__init__(f"Reference {ref} points at a {object_type}, not a commit", step="resolve")


class MissingObject(SyncError):
    """An object referenced by the graph is absent from the store."""

    def __init__(self, object_id: str, detail: str = ""):
        self.object_id = object_id
        message = f"Missing object {object_id}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, step="diff")


class MissingTree(MissingObject):
    """A commit's tree (or one of its subtrees) cannot be loaded."""


class MergeAborted(SyncError):
    """Object-store I/O failed during merge or commit; refs are unchanged."""

    def __init__(self, cause: BaseException | str):
        self.cause = cause
        super().__init__(f"Merge aborted: {cause}", step="merge")
