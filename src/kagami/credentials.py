"""Credential providers for authenticated fetches.

A credential provider is any callable ``(url, username_from_url) -> Credential``.
The fetch step turns the returned credential into a git environment: HTTPS
secrets are served to git through the bundled ``GIT_ASKPASS`` helper, which
reads them from the child process environment so they never appear on a
command line or in ``.git/config``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from importlib.resources import files
from pathlib import Path
from typing import Callable, Dict, Optional

from .observability import log_debug


ASKPASS_SCRIPT = "git-askpass-kagami"
ENV_ASKPASS_USERNAME = "KAGAMI_GIT_USERNAME"
ENV_ASKPASS_PASSWORD = "KAGAMI_GIT_PASSWORD"


@dataclass(frozen=True)
class Credential:
    """Username/secret pair handed to git for one fetch."""

    username: str = ""
    secret: str = field(default="", repr=False)

    @property
    def is_empty(self) -> bool:
        return not self.username and not self.secret


CredentialProvider = Callable[[str, Optional[str]], Credential]


def static_credentials(username: str, secret: str) -> CredentialProvider:
    """Provider returning a fixed username/secret pair."""

    def provider(_url: str, _username_from_url: Optional[str]) -> Credential:
        return Credential(username=username, secret=secret)

    return provider


def env_credentials(secret_env: str, username: str = "") -> CredentialProvider:
    """Provider reading the secret from an environment variable at fetch time."""

    def provider(_url: str, username_from_url: Optional[str]) -> Credential:
        return Credential(
            username=username or username_from_url or "",
            secret=os.environ.get(secret_env, ""),
        )

    return provider


def no_credentials(_url: str, _username_from_url: Optional[str]) -> Credential:
    """Provider for anonymous or local remotes."""
    return Credential()


def _username_from_url(url: str) -> Optional[str]:
    if "://" not in url:
        return None
    netloc = url.split("://", 1)[1].split("/", 1)[0]
    if "@" not in netloc:
        return None
    return netloc.rsplit("@", 1)[0].split(":", 1)[0] or None


def get_askpass_path() -> Optional[Path]:
    """Locate the bundled askpass helper, making sure it is executable."""
    try:
        resource = files("kagami") / "scripts" / ASKPASS_SCRIPT
        path = Path(str(resource))
    except (ModuleNotFoundError, TypeError):
        path = Path(__file__).resolve().parent / "scripts" / ASKPASS_SCRIPT

    if not path.is_file():
        return None
    if os.name != "nt" and not os.access(path, os.X_OK):
        path.chmod(0o755)
    return path


def build_git_env(url: str, provider: CredentialProvider) -> Dict[str, str]:
    """Build the environment overrides for a single fetch from or push to ``url``.

    Interactive prompts are always disabled so missing or wrong credentials
    fail fast instead of hanging the session.
    """
    env: Dict[str, str] = {
        "GIT_TERMINAL_PROMPT": "0",
        "GCM_INTERACTIVE": "never",
    }

    if url.startswith("git@") or url.startswith("ssh://"):
        # SSH URL: ensure BatchMode to prevent passphrase prompts
        env["GIT_SSH_COMMAND"] = os.environ.get("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
        return env

    if not url.startswith(("https://", "http://")):
        return env

    credential = provider(url, _username_from_url(url))
    if credential.is_empty:
        log_debug("No credentials for remote; relying on git defaults", url=url)
        return env

    askpass = get_askpass_path()
    if askpass is None:
        log_debug("Askpass helper not found; credentials unavailable to git", url=url)
        return env

    env["GIT_ASKPASS"] = str(askpass)
    env[ENV_ASKPASS_USERNAME] = credential.username
    env[ENV_ASKPASS_PASSWORD] = credential.secret
    return env
