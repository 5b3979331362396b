"""Built-in job defaults and layered config merging."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from speedtest_ingest.errors import ConfigurationError

DEFAULTS_DIR = Path(__file__).parent / "defaults"


def load_defaults(name: str = "job") -> dict[str, Any]:
    """Load ``defaults/<name>.yaml``, the lowest-precedence config layer."""
    path = DEFAULTS_DIR / f"{name}.yaml"
    try:
        with path.open() as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as exc:
        msg = f"Built-in defaults '{name}' not found at {path}"
        raise ConfigurationError(msg) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Built-in defaults '{name}' must be a mapping"
        raise ConfigurationError(msg)
    return data


def merge_configs(
    base: Mapping[str, Any], *layers: Mapping[str, Any]
) -> dict[str, Any]:
    """Apply *layers* over *base* in order; later layers win key by key.

    Sections (mappings) merge recursively, anything else replaces the
    previous value. Replacing a section with a scalar or list is rejected
    since it would silently drop every default under it. Inputs are left
    untouched.
    """
    merged = copy.deepcopy(dict(base))
    for layer in layers:
        _apply_layer(merged, layer, ())
    return merged


def _apply_layer(
    target: dict[str, Any], layer: Mapping[str, Any], path: tuple[str, ...]
) -> None:
    for key, value in layer.items():
        current = target.get(key)
        if isinstance(current, dict):
            if not isinstance(value, Mapping):
                where = ".".join((*path, str(key)))
                msg = (
                    f"'{where}' is a config section, "
                    f"got {type(value).__name__} {value!r}"
                )
                raise ConfigurationError(msg)
            _apply_layer(current, value, (*path, str(key)))
        else:
            target[key] = copy.deepcopy(value)
