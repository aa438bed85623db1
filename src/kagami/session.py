"""Sync session: one fetch-diff-merge-commit cycle between two remotes.

Typical use::

    session = SyncSession(source, destination, "./sandbox")
    print(session.diff().patch_text())
    if not session.merge():
        for conflict in session.last_merge.conflicts:
            print(conflict.path)
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

from git import Actor, Commit

from .config_schema import KagamiConfig
from .diff import Diff, DiffEngine
from .errors import SyncError
from .merge import MergeEngine, MergeResult
from .observability import log_action, log_error, timeit
from .remote import RemoteEndpoint
from .resolver import ObjectResolver
from .store import ObjectStore

DEFAULT_LOCAL_PATH = Path("./sandbox")


class SyncSession:
    """Owns a local mirror holding both remotes.

    Constructing a session opens (or initializes) the mirror, registers and
    fetches both endpoints, then checks out a local branch named after the
    destination at the destination's head.

    Thread Safety:
        A session exclusively owns its mirror. Do not point two sessions at
        the same ``local_path``.
    """

    def __init__(
        self,
        source: RemoteEndpoint,
        destination: RemoteEndpoint,
        local_path: Optional[Path | str] = None,
        *,
        config: Optional[KagamiConfig] = None,
    ):
        if source.name == destination.name:
            raise ValueError(f"Source and destination share the remote name {source.name!r}")

        self.config = config or KagamiConfig.default()
        self.source = source
        self.destination = destination
        self.path = Path(local_path) if local_path is not None else Path(self.config.sync.local_path or DEFAULT_LOCAL_PATH)
        self.last_merge: Optional[MergeResult] = None

        with timeit("session.open", path=str(self.path), source=source.name, destination=destination.name):
            self.store = _step("open", None, ObjectStore.init_or_open, self.path)
            self.resolver = ObjectResolver(self.store)
            self.diff_engine = DiffEngine(self.store)
            try:
                self._setup()
            except BaseException:
                self.store.close()
                raise

    @classmethod
    def from_config(cls, config: KagamiConfig, local_path: Optional[Path | str] = None) -> "SyncSession":
        """Build a session from the ``source``/``destination`` config tables."""
        source_cfg, destination_cfg = config.require_remotes()
        return cls(
            RemoteEndpoint.from_config(source_cfg),
            RemoteEndpoint.from_config(destination_cfg),
            local_path,
            config=config,
        )

    @property
    def branch(self) -> str:
        """Local branch that merges are committed onto."""
        return self.destination.name

    def _setup(self) -> None:
        for endpoint in (self.source, self.destination):
            _step("register", endpoint.name, endpoint.register, self.store)
        self._fetch_all()

        head = self._resolve(self.destination)
        _step("checkout", self.destination.name, self._checkout_branch, head)

    def _checkout_branch(self, head: Commit) -> None:
        branch = self.store.create_branch(self.branch, head, upstream=self.destination.tracking_ref)
        self.store.set_head(branch)
        self.store.checkout_head()

    def _fetch_all(self) -> None:
        endpoints = (self.source, self.destination)
        if not self.config.sync.parallel_fetch:
            for endpoint in endpoints:
                _step("fetch", endpoint.name, endpoint.fetch, self.store)
            return

        # Disjoint tracking refs; both fetches finish before resolution starts
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="kagami-fetch") as pool:
            futures = [pool.submit(_step, "fetch", e.name, e.fetch, self.store) for e in endpoints]
            errors = [f.exception() for f in futures]
        for error in errors:
            if error is not None:
                raise error

    def _resolve(self, endpoint: RemoteEndpoint) -> Commit:
        return _step("resolve", endpoint.name, self.resolver.resolve_head, endpoint.name, endpoint.branch)

    def heads(self) -> tuple[Commit, Commit]:
        """Current (source, destination) heads, re-read from the tracking refs."""
        return self._resolve(self.source), self._resolve(self.destination)

    def diff(self) -> Diff:
        """Changes from the source head's snapshot to the destination head's."""
        source_head, destination_head = self.heads()
        return _step("diff", None, self.diff_engine.diff, source_head, destination_head)

    def merge(self, dry_run: bool = False) -> bool:
        """Merge source into destination and commit.

        Returns True when the merge was clean and committed, False when it is
        blocked by conflicts (see :attr:`last_merge`). Failures raise.

        With ``dry_run`` the merge result is computed and recorded in
        :attr:`last_merge`, but nothing is committed and the local branch,
        index and working tree are left as they were.
        """
        source_head, destination_head = self.heads()
        engine = MergeEngine(
            self.store,
            self.branch,
            linear_history=self.config.merge.linear_history,
            text_merge=self.config.merge.text_merge,
        )
        result = _step("merge", None, engine.merge, source_head, destination_head)
        self.last_merge = result
        if result.conflicted:
            log_action(
                "session.merge",
                outcome="blocked",
                conflicts=result.conflicted_paths,
                branch=self.branch,
            )
            return False
        if dry_run:
            log_action("session.merge", outcome="dry_run", tree=result.tree_id, branch=self.branch)
            return True

        signature = Actor(self.config.git.author, self.config.git.email)
        commit_id = _step("commit", None, engine.commit_if_clean, signature, self.config.merge.message)
        log_action("session.merge", outcome="clean", commit=commit_id, branch=self.branch)
        return True

    def push(self) -> None:
        """Publish the local branch to the destination's branch.

        The push is a fast-forward of the destination, so it succeeds only
        while nobody else has updated that branch since the session fetched.

        Raises:
            PushFailed: Rejected, unreachable or unauthorized
        """
        _step("push", self.destination.name, self.destination.push, self.store, self.branch)
        log_action("session.push", branch=self.branch, target=self.destination.tracking_ref)

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> "SyncSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def _step(step: str, endpoint: Optional[str], fn, *args):
    """Run one session step, tagging any SyncError with where it happened."""
    try:
        return fn(*args)
    except SyncError as e:
        e.attach(step=step, endpoint=endpoint)
        log_error("Sync step failed", step=e.step, endpoint=e.endpoint, error=type(e).__name__)
        raise
