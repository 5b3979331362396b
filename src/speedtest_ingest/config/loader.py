"""YAML, environment variable and job parameter config loader.

Precedence, lowest first: built-in ``defaults/job.yaml``, an optional user
YAML file, runtime application properties, command-line parameters.
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, cast

import yaml
from pydantic import ValidationError

from speedtest_ingest.config.defaults import load_defaults, merge_configs
from speedtest_ingest.config.models import JobConfig
from speedtest_ingest.errors import ConfigurationError

# ${NAME} or ${NAME:-default}
_ENV_REF = re.compile(
    r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)"
    r"(?::-(?P<default>[^}]*))?\}"
)

# Job parameter name -> path inside JobConfig
PARAMETER_PATHS: dict[str, tuple[str, ...]] = {
    "Region": ("aws", "region"),
    "InputStreamName": ("source", "stream_name"),
    "TimestreamDbName": ("timestream", "database_name"),
    "TimestreamTableName": ("timestream", "table_name"),
    "MemoryStoreTTLHours": ("timestream", "memory_retention_hours"),
    "MagneticStoreTTLDays": ("timestream", "magnetic_retention_days"),
    "EndpointOverride": ("timestream", "endpoint_override"),
    "SHARD_USE_ADAPTIVE_READS": ("source", "adaptive_reads"),
    "SHARD_GETRECORDS_INTERVAL_MILLIS": ("source", "poll_interval_ms"),
    "SHARD_GETRECORDS_MAX": ("source", "max_records_per_poll"),
    "SHARD_DISCOVERY_INTERVAL_MILLIS": ("source", "shard_discovery_interval_ms"),
    "Parallelism": ("parallelism",),
}


def resolve_env_vars(data: Any, environ: Mapping[str, str] | None = None) -> Any:
    """Substitute ``${NAME}`` / ``${NAME:-default}`` in every string of *data*.

    Every unset variable without a default is reported in one
    ConfigurationError rather than failing on the first.
    """
    env = os.environ if environ is None else environ
    missing: set[str] = set()

    def _substitute(match: re.Match[str]) -> str:
        name, default = match["name"], match["default"]
        if name in env:
            return env[name]
        if default is not None:
            return default
        missing.add(name)
        return match.group(0)

    def _walk(node: Any) -> Any:
        if isinstance(node, str):
            return _ENV_REF.sub(_substitute, node)
        if isinstance(node, dict):
            return {key: _walk(value) for key, value in node.items()}
        if isinstance(node, list):
            return [_walk(item) for item in node]
        return node

    resolved = _walk(data)
    if missing:
        msg = (
            "Environment variable(s) not set and no default provided: "
            + ", ".join(sorted(missing))
        )
        raise ConfigurationError(msg)
    return resolved


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict."""
    p = Path(path)
    if not p.exists():
        msg = f"Config file not found: {p}"
        raise ConfigurationError(msg)
    try:
        with p.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        msg = f"Failed to parse YAML in {p}"
        if hasattr(exc, "problem_mark") and exc.problem_mark is not None:
            mark = exc.problem_mark
            msg += f" at line {mark.line + 1}, column {mark.column + 1}"
        msg += f": {exc}"
        raise ConfigurationError(msg) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping at top level in {p}, got {type(data).__name__}"
        raise ConfigurationError(msg)
    return cast(dict[str, Any], resolve_env_vars(data))


def parse_parameters(args: Sequence[str]) -> dict[str, str]:
    """Parse ``--Name value`` / ``--Name=value`` pairs into a dict.

    A flag followed by another flag (or by nothing) is read as ``"true"``.
    """
    params: dict[str, str] = {}
    i = 0
    while i < len(args):
        arg = args[i]
        if not arg.startswith("-") or arg in ("-", "--"):
            msg = f"Unexpected job argument '{arg}', expected --Name value"
            raise ConfigurationError(msg)
        name = arg.lstrip("-")
        if "=" in name:
            name, value = name.split("=", 1)
            i += 1
        elif i + 1 < len(args) and not args[i + 1].startswith("--"):
            value = args[i + 1]
            i += 2
        else:
            value = "true"
            i += 1
        params[name] = value
    return params


def load_application_properties(
    path: str | Path, group_id: str | None = None
) -> dict[str, str]:
    """Load runtime application properties.

    The file is a JSON list of ``{"PropertyGroupId": ..., "PropertyMap": {...}}``
    groups. All groups are flattened unless *group_id* selects one.
    """
    p = Path(path)
    if not p.exists():
        msg = f"Application properties file not found: {p}"
        raise ConfigurationError(msg)
    try:
        groups = json.loads(p.read_text())
    except json.JSONDecodeError as exc:
        msg = f"Failed to parse application properties in {p}: {exc}"
        raise ConfigurationError(msg) from exc
    if not isinstance(groups, list):
        msg = f"Expected a JSON list of property groups in {p}"
        raise ConfigurationError(msg)

    properties: dict[str, str] = {}
    for position, group in enumerate(groups):
        if not isinstance(group, dict):
            msg = (
                f"Property group {position} in {p} must be an object, "
                f"got {type(group).__name__}"
            )
            raise ConfigurationError(msg)
        if group_id is not None and group.get("PropertyGroupId") != group_id:
            continue
        property_map = group.get("PropertyMap") or {}
        if not isinstance(property_map, dict):
            msg = f"PropertyMap of group {position} in {p} must be an object"
            raise ConfigurationError(msg)
        for key, value in property_map.items():
            properties[key] = str(value)
    return properties


def parameters_to_overrides(params: dict[str, str]) -> dict[str, Any]:
    """Map job parameters onto a nested JobConfig override dict.

    Unknown parameter names are ignored so that runtime-specific properties
    can share the same property group.
    """
    overrides: dict[str, Any] = {}
    for name, value in params.items():
        path = PARAMETER_PATHS.get(name)
        if path is None:
            continue
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value
    return overrides


def load_job_config(
    path: str | Path | None = None,
    *,
    args: Sequence[str] | None = None,
    properties_path: str | Path | None = None,
) -> JobConfig:
    """Build the effective JobConfig. Every failure is a ConfigurationError."""
    layers: list[dict[str, Any]] = []
    if path is not None:
        layers.append(load_yaml(path))

    params: dict[str, str] = {}
    if properties_path is not None:
        params.update(load_application_properties(properties_path))
    if args:
        params.update(parse_parameters(args))
    if params:
        layers.append(parameters_to_overrides(params))
    base = merge_configs(load_defaults("job"), *layers)

    try:
        return JobConfig.model_validate(base)
    except ValidationError as exc:
        source = path or "built-in defaults"
        msg = f"Invalid job config ({source}):\n{exc}"
        raise ConfigurationError(msg) from exc
