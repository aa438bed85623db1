"""kagami: mirror a branch of one git remote into another."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("kagami")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for editable installs without metadata

from .diff import ChangeKind, Diff, DiffEngine, FileChange  # noqa: F401
from .errors import (  # noqa: F401
    AmbiguousOrNonCommit,
    FetchFailed,
    MergeAborted,
    MissingObject,
    MissingTree,
    PushFailed,
    RefNotFound,
    StoreError,
    SyncError,
)
from .merge import MergeConflict, MergeEngine, MergeResult, MergeState  # noqa: F401
from .remote import RemoteEndpoint  # noqa: F401
from .resolver import ObjectResolver  # noqa: F401
from .session import SyncSession  # noqa: F401
from .store import ObjectStore  # noqa: F401

__all__ = [
    "AmbiguousOrNonCommit",
    "ChangeKind",
    "Diff",
    "DiffEngine",
    "FetchFailed",
    "FileChange",
    "MergeAborted",
    "MergeConflict",
    "MergeEngine",
    "MergeResult",
    "MergeState",
    "MissingObject",
    "MissingTree",
    "ObjectResolver",
    "ObjectStore",
    "PushFailed",
    "RefNotFound",
    "RemoteEndpoint",
    "StoreError",
    "SyncError",
    "SyncSession",
    "__version__",
]
