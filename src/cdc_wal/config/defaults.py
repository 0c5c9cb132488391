"""Built-in defaults and config merging."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from cdc_wal.config.models import ReaderConfig

DEFAULTS_DIR = Path(__file__).parent / "defaults"


def load_defaults(name: str = "reader") -> dict[str, Any]:
    """Load a YAML defaults file by name from the defaults directory."""
    path = DEFAULTS_DIR / f"{name}.yaml"
    if not path.exists():
        msg = f"Defaults file '{name}' not found at {path}"
        raise FileNotFoundError(msg)
    with path.open() as f:
        return yaml.safe_load(f)  # type: ignore[no-any-return]


def merge_configs(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Recursively deep-merge *overrides* into *base* (non-mutating)."""
    merged: dict[str, Any] = {**base}
    for key, value in overrides.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = value
    return merged


def build_reader_config(
    overrides: dict[str, Any],
    *,
    defaults: str = "reader",
) -> ReaderConfig:
    """Validate *overrides* layered over the named defaults file."""
    return ReaderConfig.model_validate(merge_configs(load_defaults(defaults), overrides))
