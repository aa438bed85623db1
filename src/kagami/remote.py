"""Remote endpoints: one named remote, one branch, one set of credentials."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from git import PushInfo, Remote
from git.exc import GitCommandError

from .config_schema import RemoteConfig
from .credentials import CredentialProvider, build_git_env, env_credentials, static_credentials
from .errors import FetchFailed, PushFailed, SyncError
from .observability import log_debug, timeit
from .store import ObjectStore

PUSH_FAILURE_FLAGS = PushInfo.ERROR | PushInfo.REJECTED | PushInfo.REMOTE_REJECTED | PushInfo.REMOTE_FAILURE


@dataclass(frozen=True)
class RemoteEndpoint:
    """Immutable description of a remote repository and the branch to sync.

    ``credential`` is the password or access token for ``username``; it is
    excluded from ``repr`` and never logged. ``credential_provider``, when
    given, is consulted at fetch time instead of the static pair.
    """

    name: str
    url: str
    branch: str = "master"
    username: str = ""
    credential: str = field(default="", repr=False)
    credential_provider: Optional[CredentialProvider] = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.name or "/" in self.name:
            raise ValueError(f"Invalid remote name: {self.name!r}")
        if not self.url:
            raise ValueError(f"Remote {self.name!r} has no URL")
        if not self.branch:
            raise ValueError(f"Remote {self.name!r} has no branch")

    @classmethod
    def from_config(cls, config: RemoteConfig) -> "RemoteEndpoint":
        provider = env_credentials(config.credential_env, config.username) if config.credential_env else None
        return cls(
            name=config.name,
            url=config.url,
            branch=config.branch,
            username=config.username,
            credential_provider=provider,
        )

    @property
    def tracking_ref(self) -> str:
        """Short name of the ref updated by :meth:`fetch`."""
        return f"{self.name}/{self.branch}"

    @property
    def refspec(self) -> str:
        return f"+refs/heads/{self.branch}:refs/remotes/{self.name}/{self.branch}"

    def _provider(self) -> CredentialProvider:
        if self.credential_provider is not None:
            return self.credential_provider
        return static_credentials(self.username, self.credential)

    def register(self, store: ObjectStore) -> Remote:
        """Ensure a remote named ``name`` pointing at ``url`` exists in ``store``."""
        with timeit("remote.register", remote=self.name):
            try:
                return store.add_or_get_remote(self.name, self.url)
            except GitCommandError as e:
                raise SyncError(
                    f"Cannot register remote '{self.name}': {e}", step="register", endpoint=self.name
                ) from e

    def fetch(self, store: ObjectStore) -> None:
        """Fetch ``branch`` into the ``<name>/<branch>`` tracking ref.

        One attempt only. The working tree is never touched.

        Raises:
            FetchFailed: Network, authentication or missing-branch failure
        """
        remote = store.find_remote(self.name)
        if remote is None:
            remote = self.register(store)

        with timeit("remote.fetch", remote=self.name, branch=self.branch):
            try:
                env = build_git_env(self.url, self._provider())
            except Exception as e:
                raise FetchFailed(self.name, f"credential provider failed: {e}") from e
            log_debug("Fetching", remote=self.name, refspec=self.refspec, auth="GIT_ASKPASS" in env)
            try:
                store.fetch(remote, self.refspec, env)
            except GitCommandError as e:
                raise FetchFailed(self.name, _describe(e)) from e

    def push(self, store: ObjectStore, local_branch: str) -> None:
        """Update ``branch`` on the remote to the tip of ``local_branch``.

        Not forced: the remote only accepts a fast-forward. One attempt only.

        Raises:
            PushFailed: Rejected update, network or authentication failure
        """
        remote = store.find_remote(self.name)
        if remote is None:
            remote = self.register(store)

        refspec = f"refs/heads/{local_branch}:refs/heads/{self.branch}"
        with timeit("remote.push", remote=self.name, branch=self.branch) as info:
            try:
                env = build_git_env(self.url, self._provider())
            except Exception as e:
                raise PushFailed(self.name, f"credential provider failed: {e}") from e
            log_debug("Pushing", remote=self.name, refspec=refspec, auth="GIT_ASKPASS" in env)
            try:
                results = store.push(remote, refspec, env)
            except GitCommandError as e:
                raise PushFailed(self.name, _describe(e)) from e

            if not results:
                raise PushFailed(self.name, "no ref was updated")
            for result in results:
                if result.flags & PUSH_FAILURE_FLAGS:
                    raise PushFailed(self.name, (result.summary or "rejected").strip())
            info["up_to_date"] = all(r.flags & PushInfo.UP_TO_DATE for r in results)


def _describe(error: GitCommandError) -> str:
    stderr = (error.stderr or "").strip()
    if stderr.startswith("stderr:"):
        stderr = stderr[len("stderr:"):].strip()
    stderr = stderr.strip("'\"").strip()
    return stderr.splitlines()[-1] if stderr else f"git exited with status {error.status}"
