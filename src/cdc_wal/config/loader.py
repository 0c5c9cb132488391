"""YAML + environment variable config loader."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, cast

import yaml
from pydantic import ValidationError

from cdc_wal.config.defaults import build_reader_config
from cdc_wal.config.models import ReaderConfig

# ${VAR} or ${VAR:-default}; "\}" escapes a brace inside the default
_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::-((?:[^}\\]|\\.)*))?}")


def _substitute(match: re.Match[str]) -> str:
    name, default = match.group(1), match.group(2)
    value = os.environ.get(name)
    if value is not None:
        return value
    if default is not None:
        return default.replace("\\}", "}")
    msg = f"Environment variable '{name}' is not set and no default provided"
    raise ValueError(msg)


def resolve_env_vars(data: Any) -> Any:
    """Recursively resolve ${VAR} and ${VAR:-default} in parsed YAML data."""
    if isinstance(data, str):
        return _ENV_PATTERN.sub(_substitute, data)
    if isinstance(data, dict):
        return {key: resolve_env_vars(value) for key, value in data.items()}
    if isinstance(data, list):
        return [resolve_env_vars(item) for item in data]
    return data


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Read a YAML mapping from *path* with environment references resolved."""
    p = Path(path)
    if not p.exists():
        msg = f"Config file not found: {p}"
        raise FileNotFoundError(msg)
    try:
        with p.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        msg = f"Failed to parse YAML in {p}"
        mark = getattr(exc, "problem_mark", None)
        if mark is not None:
            msg += f" at line {mark.line + 1}, column {mark.column + 1}"
        raise ValueError(f"{msg}: {exc}") from exc
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping at top level in {p}, got {type(data).__name__}"
        raise TypeError(msg)
    return cast(dict[str, Any], resolve_env_vars(data))


def load_reader_config(path: str | Path) -> ReaderConfig:
    """Load a reader config YAML merged over the built-in defaults."""
    overrides = load_yaml(path)
    try:
        return build_reader_config(overrides)
    except ValidationError as exc:
        msg = f"Invalid reader config ({path}):\n{exc}"
        raise ValueError(msg) from exc
