"""Configuration schema for kagami.

Defines all configuration options with types, defaults, and validation.
Uses Pydantic for schema enforcement and clear error messages.
"""

from __future__ import annotations

import os
import warnings
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RemoteConfig(BaseModel):
    """One remote endpoint (source or destination)."""

    name: str = Field(description="Local remote identifier, e.g. 'github'")
    url: str = Field(description="Clone URL of the remote repository")
    branch: str = Field(default="master", description="Branch to synchronize")
    username: str = Field(default="", description="Username for HTTPS authentication")
    credential_env: str = Field(
        default="",
        description="Environment variable holding the password or access token",
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Remote names become ref path components."""
        v = v.strip()
        if not v:
            raise ValueError("remote name must not be empty")
        if "/" in v or " " in v:
            raise ValueError(f"remote name may not contain '/' or spaces: {v!r}")
        return v

    @field_validator("credential_env")
    @classmethod
    def validate_credential_env(cls, v: str) -> str:
        """Warn if the named credential variable is not set."""
        if v and v not in os.environ:
            warnings.warn(
                f"Credential environment variable is not set: {v}",
                UserWarning,
            )
        return v


class GitConfig(BaseModel):
    """Commit identity for merge commits."""

    author: str = Field(default="kagami", description="Merge commit author name")
    email: str = Field(default="kagami@localhost", description="Merge commit author email")


class MergeConfig(BaseModel):
    """Merge behavior settings."""

    linear_history: bool = Field(
        default=False,
        description="Record only the destination head as parent of merge commits",
    )
    message: str = Field(
        default="Merge commit",
        description="Commit message for merge commits",
    )
    text_merge: bool = Field(
        default=True,
        description="Attempt line-level merges when both sides edited the same file",
    )


class SyncConfig(BaseModel):
    """Local mirror settings."""

    local_path: str = Field(
        default="./sandbox",
        description="Path of the local mirror repository",
    )
    parallel_fetch: bool = Field(
        default=False,
        description="Fetch source and destination concurrently",
    )

    @field_validator("local_path")
    @classmethod
    def validate_local_path(cls, v: str) -> str:
        """Warn if the mirror path exists but is not a directory."""
        if v:
            path = Path(v).expanduser()
            if path.exists() and not path.is_dir():
                warnings.warn(
                    f"Mirror path exists but is not a directory: {v}",
                    UserWarning,
                )
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level",
    )
    dir: str = Field(
        default="",
        description="Log directory (empty = ~/.kagami/logs)",
    )
    disable_file: bool = Field(
        default=False,
        description="Disable file logging (stderr only)",
    )


class KagamiConfig(BaseModel):
    """Root configuration model."""

    model_config = ConfigDict(populate_by_name=True)

    version: int = Field(default=1, ge=1, description="Config schema version")

    source: Optional[RemoteConfig] = Field(default=None, description="Remote merged from")
    destination: Optional[RemoteConfig] = Field(default=None, description="Remote merged into")

    git: GitConfig = Field(default_factory=GitConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> "KagamiConfig":
        """Create config with all defaults."""
        return cls()

    def require_remotes(self) -> tuple[RemoteConfig, RemoteConfig]:
        """Return (source, destination), failing if either is unset."""
        missing = [label for label in ("source", "destination") if getattr(self, label) is None]
        if missing:
            raise ValueError(f"Missing remote configuration: {', '.join(missing)}")
        return self.source, self.destination  # type: ignore[return-value]
