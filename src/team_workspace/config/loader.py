"""
team-workspace — runtime config loader.

Purpose
- Load effective runtime config from defaults, ``workspace.toml``, ``TEAMWS_``
  env vars, and CLI overrides.

Functional requirements
- Precedence: CLI > env > file > defaults. A selected profile is overlaid on
  the file before env and CLI values are applied.
- Env vars are bound to a fixed table of config keys; unknown ``TEAMWS_``
  names are ignored.
- Relative path fields resolve against the project root.
- The config file in use is reported through ``ConfigSource`` so the executor
  can refuse patches that target it.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal

from team_workspace.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "workspace.toml"
ENV_PREFIX: Final[str] = "TEAMWS_"
PROFILE_ENV: Final[str] = f"{ENV_PREFIX}PROFILE"

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

_ValueType = Literal["str", "float", "bool", "csv"]


@dataclass(frozen=True, slots=True)
class _Binding:
    path: tuple[str, ...]
    value_type: _ValueType

    @property
    def env_name(self) -> str:
        return ENV_PREFIX + "_".join(part.upper() for part in self.path)


_ENV_BINDINGS: Final[tuple[_Binding, ...]] = (
    _Binding(("policy", "allow_commands"), "bool"),
    _Binding(("policy", "allow_high_risk"), "bool"),
    _Binding(("policy", "allowed_command_prefixes"), "csv"),
    _Binding(("policy", "allow_patches"), "bool"),
    _Binding(("policy", "auto_apply_patches"), "bool"),
    _Binding(("executor", "audit_log"), "str"),
    _Binding(("executor", "inherit_host_env"), "bool"),
    _Binding(("executor", "command_timeout_seconds"), "float"),
    _Binding(("session", "history_file"), "str"),
    _Binding(("observability", "log_level"), "str"),
    _Binding(("observability", "log_format"), "str"),
    _Binding(("observability", "log_dir"), "str"),
    _Binding(("observability", "log_to_file"), "bool"),
    _Binding(("observability", "redact_secrets"), "bool"),
)


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


@dataclass(frozen=True, slots=True)
class ConfigSource:
    """Config file location for one project. ``explicit`` files must exist."""

    path: Path
    explicit: bool

    @property
    def exists(self) -> bool:
        return self.path.is_file()


def resolve_config_source(
    config_path: str | Path | None = None,
    *,
    project_root: str | Path | None = None,
) -> ConfigSource:
    """Return the file ``load_config`` reads for these arguments."""

    if config_path is not None:
        return ConfigSource(Path(config_path).expanduser().resolve(), explicit=True)
    return ConfigSource((_project_root(project_root) / DEFAULT_CONFIG_FILE).resolve(), explicit=False)


def load_config(
    config_path: str | Path | None = None,
    *,
    project_root: str | Path | None = None,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load effective config with deterministic precedence: CLI > env > file > defaults.

    Without an explicit ``config_path`` the loader looks for ``workspace.toml``
    in ``project_root`` (or the working directory) and falls back to defaults
    when it is absent.
    """

    root = _project_root(project_root)
    source = resolve_config_source(config_path, project_root=root)
    env_map = os.environ if environ is None else environ

    merged = assert_valid_config(merge_config(default_config(), _read_source(source)))

    selected_profile = _selected_profile(profile, env_map)
    if selected_profile is not None:
        merged = apply_profile_overlay(merged, selected_profile)

    merged = merge_config(merged, _env_overrides(env_map))
    merged = merge_config(merged, _cli_overrides(cli_overrides or {}))
    merged = assert_valid_config(merged, active_profile=selected_profile)

    return assert_valid_config(normalize_paths(merged, base_dir=root), active_profile=selected_profile)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Anchor relative path fields at ``base_dir``; absolute ones are only normalized."""

    materialized = merge_config({}, config)
    for field_path in PATH_FIELDS:
        value = _get_nested(materialized, field_path)
        if isinstance(value, str):
            _set_nested(materialized, field_path, _anchor_path(value, base_dir))
    return materialized


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Return deterministic JSON dump of redacted effective config."""

    return json.dumps(redact_config(config), sort_keys=True, indent=2, ensure_ascii=False)


def _project_root(project_root: str | Path | None) -> Path:
    if project_root is None:
        return Path.cwd()
    return Path(project_root).expanduser().resolve()


def _read_source(source: ConfigSource) -> dict[str, Any]:
    if not source.exists:
        if source.explicit:
            raise ConfigLoadError(f"config file not found: {source.path}")
        return {}

    try:
        with source.path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {source.path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {source.path}: {exc}") from exc


def _selected_profile(profile: str | None, environ: Mapping[str, str]) -> str | None:
    raw = profile if profile is not None else environ.get(PROFILE_ENV)
    if raw is None:
        return None
    return raw.strip() or None


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for binding in _ENV_BINDINGS:
        raw = environ.get(binding.env_name)
        if raw is not None:
            _set_nested(overrides, binding.path, _coerce_env(raw, binding))
    return overrides


def _coerce_env(raw: str, binding: _Binding) -> object:
    value = raw.strip()
    target = f"{binding.env_name} -> {'.'.join(binding.path)}"
    if binding.value_type == "str":
        return value
    if binding.value_type == "csv":
        return [item.strip() for item in value.split(",") if item.strip()]
    if binding.value_type == "float":
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{target} must be a number") from exc

    lowered = value.lower()
    if lowered in _BOOLEAN_TRUE:
        return True
    if lowered in _BOOLEAN_FALSE:
        return False
    raise ConfigLoadError(f"{target} must be a boolean (true/false/1/0/yes/no/on/off)")


def _cli_overrides(cli_overrides: Mapping[str, object]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key in sorted(cli_overrides):
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _set_nested(payload, path, cli_overrides[key])
    return payload


def _set_nested(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    cursor = target
    for part in path[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[path[-1]] = value


def _get_nested(payload: Mapping[str, object], path: tuple[str, ...]) -> object | None:
    cursor: object = payload
    for part in path:
        if not isinstance(cursor, Mapping) or part not in cursor:
            return None
        cursor = cursor[part]
    return cursor


def _anchor_path(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(str(candidate))).as_posix()


__all__ = [
    "ConfigLoadError",
    "ConfigSource",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV",
    "dump_effective_config",
    "load_config",
    "normalize_paths",
    "resolve_config_source",
]
