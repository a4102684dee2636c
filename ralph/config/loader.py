"""Configuration loader for ralph."""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from ralph.config.models import RalphConfig
from ralph.core.errors import ConfigError


def _apply_override(config_dict: dict[str, Any], key: str, value: Any) -> None:
    """Set ``value`` at a dotted key such as ``context.threshold``."""
    parts = key.split(".")
    current = config_dict
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def read_config_file(path: Path) -> dict[str, Any]:
    """Read a TOML configuration file into a plain dictionary.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ConfigError: If the file is not valid TOML.
    """
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "rb") as f:
        try:
            raw_config = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {path}: {e}") from e

    # Top-level scalars plus the known sections; the legacy [ralph] table is
    # treated as top-level.
    config_dict: dict[str, Any] = {}
    for key, value in raw_config.items():
        if key == "ralph" and isinstance(value, dict):
            config_dict.update(value)
        else:
            config_dict[key] = value
    return config_dict


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[dict[str, Any]] = None,
) -> RalphConfig:
    """Load configuration with optional overrides.

    Args:
        config_path: Optional path to a TOML config file.
        overrides: Optional dictionary of overrides; keys may be dotted
            (``"retry.max_attempts"``) to reach into sections.

    Returns:
        RalphConfig instance.

    Raises:
        ConfigError: If the merged configuration fails validation.
    """
    config_dict: dict[str, Any] = {}

    if config_path is not None:
        config_dict = read_config_file(config_path)

    for key, value in (overrides or {}).items():
        _apply_override(config_dict, key, value)

    try:
        return RalphConfig(**config_dict)
    except ValidationError as e:
        source = f" ({config_path})" if config_path else ""
        raise ConfigError(f"Invalid configuration{source}: {e}") from e


def find_config_file() -> Optional[Path]:
    """Find the configuration file in standard locations.

    Searches in order:
    1. ./ralph.toml
    2. ./.ralph.toml
    3. ~/.config/ralph/config.toml

    Returns:
        Path to the config file if found, None otherwise.
    """
    search_paths = [
        Path.cwd() / "ralph.toml",
        Path.cwd() / ".ralph.toml",
        Path.home() / ".config" / "ralph" / "config.toml",
    ]

    for path in search_paths:
        if path.exists():
            return path

    return None
