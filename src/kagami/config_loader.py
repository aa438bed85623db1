"""Configuration loading and merging for kagami.

Handles TOML loading, config discovery, deep merging, and environment overlay.
"""

from __future__ import annotations

import copy
import os
import sys
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

# TOML loading: tomllib (3.11+) with tomli fallback
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore

import tomlkit
from pydantic import ValidationError

from .config_schema import KagamiConfig


CONFIG_FILENAME = "config.toml"

# Directory names
USER_CONFIG_DIR = ".kagami"
PROJECT_CONFIG_DIR = ".kagami"

# Environment variable -> (section path, key)
ENV_MAPPING: Dict[str, tuple[list[str], str]] = {
    # Source remote
    "KAGAMI_SOURCE_NAME": (["source"], "name"),
    "KAGAMI_SOURCE_URL": (["source"], "url"),
    "KAGAMI_SOURCE_BRANCH": (["source"], "branch"),
    "KAGAMI_SOURCE_USERNAME": (["source"], "username"),
    "KAGAMI_SOURCE_CREDENTIAL_ENV": (["source"], "credential_env"),
    # Destination remote
    "KAGAMI_DESTINATION_NAME": (["destination"], "name"),
    "KAGAMI_DESTINATION_URL": (["destination"], "url"),
    "KAGAMI_DESTINATION_BRANCH": (["destination"], "branch"),
    "KAGAMI_DESTINATION_USERNAME": (["destination"], "username"),
    "KAGAMI_DESTINATION_CREDENTIAL_ENV": (["destination"], "credential_env"),
    # Git identity
    "KAGAMI_GIT_AUTHOR": (["git"], "author"),
    "KAGAMI_GIT_EMAIL": (["git"], "email"),
    # Merge
    "KAGAMI_LINEAR_HISTORY": (["merge"], "linear_history"),
    "KAGAMI_MERGE_MESSAGE": (["merge"], "message"),
    "KAGAMI_TEXT_MERGE": (["merge"], "text_merge"),
    # Sync
    "KAGAMI_LOCAL_PATH": (["sync"], "local_path"),
    "KAGAMI_PARALLEL_FETCH": (["sync"], "parallel_fetch"),
    # Logging
    "KAGAMI_LOG_LEVEL": (["logging"], "level"),
    "KAGAMI_LOG_DIR": (["logging"], "dir"),
    "KAGAMI_LOG_DISABLE_FILE": (["logging"], "disable_file"),
}


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


def _get_user_config_dir() -> Path:
    """Get user-level config directory (~/.kagami/)."""
    return Path.home() / USER_CONFIG_DIR


def _get_project_config_dir(project_path: Optional[Path] = None) -> Optional[Path]:
    """Get project-level config directory (.kagami/).

    Searches upward from project_path to find .kagami/ directory.
    """
    if project_path is None:
        project_path = Path.cwd()

    if not project_path.is_absolute():
        project_path = project_path.resolve()

    current = project_path
    while current != current.parent:
        config_dir = current / PROJECT_CONFIG_DIR
        if config_dir.is_dir() and config_dir != _get_user_config_dir():
            return config_dir
        current = current.parent

    return None


def _load_toml(path: Path) -> Dict[str, Any]:
    """Load a TOML file.

    Raises:
        ConfigError: If file cannot be loaded or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries.

    Override values take precedence. Nested dicts are merged recursively.
    Lists are replaced, not merged.
    """
    result = base.copy()

    for key, value in override.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _env_to_config_key(env_var: str) -> tuple[list[str], str]:
    """Map environment variable to config path.

    Examples:
        KAGAMI_SOURCE_URL -> (["source"], "url")
        KAGAMI_LINEAR_HISTORY -> (["merge"], "linear_history")
    """
    return ENV_MAPPING.get(env_var, ([], env_var))


def _apply_env_overlay(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to config dict."""
    result = copy.deepcopy(config_dict)

    for env_var in ENV_MAPPING:
        value = os.getenv(env_var)
        if value is None:
            continue

        section_path, key_name = _env_to_config_key(env_var)
        if not section_path:
            continue

        current = result
        for section in section_path:
            if not isinstance(current.get(section), dict):
                current[section] = {}
            current = current[section]

        # Type conversion happens during Pydantic validation
        current[key_name] = value

    return result


def load_config(
    project_path: Optional[Path] = None,
    skip_env: bool = False,
    config_file: Optional[Path] = None,
) -> KagamiConfig:
    """Load and merge kagami configuration.

    Discovery order (later sources override earlier):
    1. Built-in defaults
    2. User config (~/.kagami/config.toml)
    3. Project config (.kagami/config.toml), or ``config_file`` when given
    4. Environment variables (unless skip_env=True)

    Raises:
        ConfigError: If config files are invalid
    """
    config_dict: Dict[str, Any] = {}

    # 1. User config
    user_config_path = _get_user_config_dir() / CONFIG_FILENAME
    if user_config_path.exists():
        try:
            config_dict = _deep_merge(config_dict, _load_toml(user_config_path))
        except ConfigError as e:
            # User config is optional, warn but continue
            warnings.warn(
                f"Skipping invalid user config at {user_config_path}: {e}",
                UserWarning,
            )

    # 2. Project config or explicit file
    if config_file is not None:
        config_dict = _deep_merge(config_dict, _load_toml(Path(config_file)))
    else:
        project_config_dir = _get_project_config_dir(project_path)
        if project_config_dir:
            project_config_path = project_config_dir / CONFIG_FILENAME
            if project_config_path.exists():
                try:
                    config_dict = _deep_merge(config_dict, _load_toml(project_config_path))
                except ConfigError as e:
                    raise ConfigError(f"Invalid project config: {e}")

    # 3. Environment overlay
    if not skip_env:
        config_dict = _apply_env_overlay(config_dict)

    # 4. Validate
    try:
        return KagamiConfig.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigError(f"Config validation failed:\n{e}")


def render_config_template(config: Optional[KagamiConfig] = None) -> str:
    """Render a commented config.toml for ``kagami config init``."""
    config = config or KagamiConfig.default()
    doc = tomlkit.document()
    doc.add(tomlkit.comment("kagami configuration"))
    doc.add(tomlkit.comment("Secrets are never stored here: credential_env names an environment variable."))
    doc.add("version", config.version)

    for label, example_name, example_url in (
        ("source", "github", "https://github.com/org/project.git"),
        ("destination", "gitlab", "https://gitlab.com/org/project.git"),
    ):
        remote = getattr(config, label)
        table = tomlkit.table()
        table.add("name", remote.name if remote else example_name)
        table.add("url", remote.url if remote else example_url)
        table.add("branch", remote.branch if remote else "master")
        table.add("username", remote.username if remote else "")
        table.add("credential_env", remote.credential_env if remote else f"{example_name.upper()}_ACCESS_TOKEN")
        doc.add(label, table)

    for section in ("git", "merge", "sync", "logging"):
        table = tomlkit.table()
        for key, value in getattr(config, section).model_dump().items():
            table.add(key, value)
        doc.add(section, table)

    return tomlkit.dumps(doc)


def ensure_config_dir(user: bool = True, project_path: Optional[Path] = None) -> Path:
    """Ensure config directory exists and return it."""
    if user:
        config_dir = _get_user_config_dir()
    else:
        if project_path is None:
            project_path = Path.cwd()
        config_dir = project_path / PROJECT_CONFIG_DIR

    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir
