"""Configuration loading utilities."""

import json
import re
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from nekobot.config.schema import Config
from nekobot.errors import PersistenceError
from nekobot.utils.helpers import atomic_write_text

# Dict keys below these are user data (header names, env vars, server names)
# and must keep their casing.
_PRESERVE_CHILD_KEYS = {"extra_headers", "env"}
_NAMED_MAPS = {"mcp_servers"}


def get_data_dir() -> Path:
    """Get the nekobot data directory (~/.nekobot)."""
    return Path.home() / ".nekobot"


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return get_data_dir() / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file or create default.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.

    Raises:
        PersistenceError: If the file exists but can't be parsed.
    """
    path = config_path or get_config_path()

    if not path.exists():
        logger.debug(f"No config at {path}, using defaults")
        return Config()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Config(**convert_keys(data))
    except (json.JSONDecodeError, ValidationError) as e:
        raise PersistenceError(f"Failed to load config from {path}: {e}") from e


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Save configuration to file (camelCase keys)."""
    path = config_path or get_config_path()
    data = convert_to_camel(config.model_dump())
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False))


def camel_to_snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(word.capitalize() for word in rest)


def convert_keys(data: Any) -> Any:
    """Convert camelCase keys to snake_case recursively."""
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    if not isinstance(data, dict):
        return data

    out: dict[str, Any] = {}
    for key, value in data.items():
        new_key = camel_to_snake(key)
        if new_key in _PRESERVE_CHILD_KEYS and isinstance(value, dict):
            out[new_key] = dict(value)
        elif new_key in _NAMED_MAPS and isinstance(value, dict):
            out[new_key] = {name: convert_keys(v) for name, v in value.items()}
        else:
            out[new_key] = convert_keys(value)
    return out


def convert_to_camel(data: Any) -> Any:
    """Convert snake_case keys to camelCase recursively."""
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    if not isinstance(data, dict):
        return data

    out: dict[str, Any] = {}
    for key, value in data.items():
        new_key = snake_to_camel(key)
        if key in _PRESERVE_CHILD_KEYS and isinstance(value, dict):
            out[new_key] = dict(value)
        elif key in _NAMED_MAPS and isinstance(value, dict):
            out[new_key] = {name: convert_to_camel(v) for name, v in value.items()}
        else:
            out[new_key] = convert_to_camel(value)
    return out
