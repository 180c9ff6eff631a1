"""
team-workspace — configuration schema and validation.

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Profile overlay validation and deterministic deep-merge helpers.
- Redaction rules for sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Support profile overlays including strict/permissive/locked.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from team_workspace.constants import AUDIT_LOG_PATH, CONFIG_SCHEMA_VERSION, LOG_DIR
from team_workspace.gate.policy import PermissionPolicy, PolicyConfigError

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "permissive", "locked")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "private", "credential", "credentials"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Config paths resolved relative to the project root.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("executor", "audit_log"),
    ("session", "history_file"),
    ("observability", "log_dir"),
)

_POLICY_KEYS: Final[frozenset[str]] = frozenset(
    {
        "allow_commands",
        "allow_high_risk",
        "allowed_command_prefixes",
        "allow_patches",
        "auto_apply_patches",
    }
)


class MetaConfig(TypedDict):
    schema_version: int


class PolicySection(TypedDict):
    allow_commands: bool
    allow_high_risk: bool
    allowed_command_prefixes: list[str]
    allow_patches: bool
    auto_apply_patches: bool


class ExecutorConfig(TypedDict):
    audit_log: str
    inherit_host_env: bool
    command_timeout_seconds: NotRequired[float | None]


class SessionConfig(TypedDict, total=False):
    history_file: str | None


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "text"]
    log_dir: str
    log_to_file: bool
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    policy: dict[str, object]
    executor: dict[str, object]
    session: dict[str, object]
    observability: dict[str, object]


class WorkspaceConfig(TypedDict):
    meta: MetaConfig
    policy: PolicySection
    executor: ExecutorConfig
    session: SessionConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[WorkspaceConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "policy": {
        "allow_commands": True,
        "allow_high_risk": False,
        "allowed_command_prefixes": [],
        "allow_patches": True,
        "auto_apply_patches": False,
    },
    "executor": {
        "audit_log": AUDIT_LOG_PATH.as_posix(),
        "inherit_host_env": False,
        "command_timeout_seconds": None,
    },
    "session": {
        "history_file": None,
    },
    "observability": {
        "log_level": "WARNING",
        "log_format": "text",
        "log_dir": LOG_DIR.as_posix(),
        "log_to_file": False,
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "policy": {"allow_high_risk": False, "auto_apply_patches": False},
            "executor": {"command_timeout_seconds": 300.0},
        },
        "permissive": {
            "policy": {"allow_high_risk": True, "auto_apply_patches": True},
        },
        "locked": {
            "policy": {"allow_commands": False, "allow_patches": False},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> WorkspaceConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade workspace.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the team-workspace runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the resulting config."""

    materialized = _deep_copy_mapping(config)
    if profile is None:
        return materialized

    selected = profile.strip()
    if not selected:
        return materialized

    profiles_raw = materialized.get("profiles")
    if not isinstance(profiles_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", "profiles section is required"),)
        )

    overlay_raw = profiles_raw.get(selected)
    if overlay_raw is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )

    merged = merge_config(materialized, overlay_raw)
    return assert_valid_config(merged, active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, "", issues)

    selected_profile = active_profile.strip() if isinstance(active_profile, str) else None
    if selected_profile:
        profiles = normalized.get("profiles")
        if not isinstance(profiles, Mapping) or selected_profile not in profiles:
            issues.add("profiles", f"profile {selected_profile!r} is not defined")

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def policy_from_config(config: Mapping[str, object]) -> PermissionPolicy:
    """Build the ``PermissionPolicy`` described by the ``[policy]`` section."""

    section = config.get("policy")
    if not isinstance(section, Mapping):
        raise ConfigValidationError((ConfigValidationIssue("policy", "missing required field"),))
    try:
        return PermissionPolicy.from_mapping(section)
    except PolicyConfigError as exc:
        raise ConfigValidationError(
            tuple(
                ConfigValidationIssue(_join("policy", item.path), item.message)
                for item in exc.issues
            )
        ) from exc


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs and ``teamws config``."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


def _validate_root(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    allowed = {"meta", "policy", "executor", "session", "observability", "profiles"}
    required = {"meta", "policy", "executor", "observability"}

    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, required, path, issues)

    out: dict[str, Any] = {}
    validators: dict[str, Callable[[dict[str, object], str], dict[str, Any]]] = {
        "meta": lambda section, section_path: _validate_meta(section, section_path, issues),
        "policy": lambda section, section_path: _validate_policy(
            section, section_path, issues, partial=False
        ),
        "executor": lambda section, section_path: _validate_executor(
            section, section_path, issues, partial=False
        ),
        "session": lambda section, section_path: _validate_session(section, section_path, issues),
        "observability": lambda section, section_path: _validate_observability(
            section, section_path, issues, partial=False
        ),
    }
    for key, validator in validators.items():
        _section(payload, key=key, path=path, issues=issues, validator=validator, out=out)

    profiles_raw = payload.get("profiles")
    if profiles_raw is not None:
        profiles_path = _join(path, "profiles")
        profiles_obj = _as_object(profiles_raw, profiles_path, issues)
        if profiles_obj is not None:
            out["profiles"] = _validate_profiles(profiles_obj, profiles_path, issues)
    return out


def _section(
    payload: Mapping[str, object],
    *,
    key: str,
    path: str,
    issues: _IssueCollector,
    validator: Callable[[dict[str, object], str], dict[str, Any]],
    out: dict[str, Any],
) -> None:
    raw = payload.get(key)
    if raw is None:
        return
    section_path = _join(path, key)
    section_obj = _as_object(raw, section_path, issues)
    if section_obj is None:
        return
    out[key] = validator(section_obj, section_path)


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)

    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_policy(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(_POLICY_KEYS), path, issues)
    if not partial:
        _require_keys(payload, set(_POLICY_KEYS), path, issues)

    out: dict[str, Any] = {}
    for key in ("allow_commands", "allow_high_risk", "allow_patches", "auto_apply_patches"):
        if key in payload:
            parsed = _as_bool(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed

    if "allowed_command_prefixes" in payload:
        prefixes = _as_str_list(
            payload["allowed_command_prefixes"],
            _join(path, "allowed_command_prefixes"),
            issues,
        )
        if prefixes is not None:
            out["allowed_command_prefixes"] = prefixes
    return out


def _validate_executor(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"audit_log", "inherit_host_env", "command_timeout_seconds"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, {"audit_log", "inherit_host_env"}, path, issues)

    out: dict[str, Any] = {}
    if "audit_log" in payload:
        parsed_audit = _as_path_text(payload["audit_log"], _join(path, "audit_log"), issues)
        if parsed_audit is not None:
            out["audit_log"] = parsed_audit

    if "inherit_host_env" in payload:
        parsed_env = _as_bool(payload["inherit_host_env"], _join(path, "inherit_host_env"), issues)
        if parsed_env is not None:
            out["inherit_host_env"] = parsed_env

    if "command_timeout_seconds" in payload:
        raw = payload["command_timeout_seconds"]
        if raw is None:
            out["command_timeout_seconds"] = None
        else:
            parsed_timeout = _as_float(
                raw, _join(path, "command_timeout_seconds"), issues, exclusive_minimum=0.0
            )
            if parsed_timeout is not None:
                out["command_timeout_seconds"] = parsed_timeout
    return out


def _validate_session(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"history_file"}, path, issues)

    out: dict[str, Any] = {}
    if "history_file" in payload:
        raw = payload["history_file"]
        if raw is None:
            out["history_file"] = None
        else:
            parsed = _as_path_text(raw, _join(path, "history_file"), issues)
            if parsed is not None:
                out["history_file"] = parsed
    return out


def _validate_observability(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"log_level", "log_format", "log_dir", "log_to_file", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}

    if "log_level" in payload:
        parsed_log_level = _as_enum(
            payload["log_level"],
            _join(path, "log_level"),
            issues,
            allowed_values=("DEBUG", "INFO", "WARNING", "ERROR"),
        )
        if parsed_log_level is not None:
            out["log_level"] = parsed_log_level

    if "log_format" in payload:
        parsed_log_format = _as_enum(
            payload["log_format"],
            _join(path, "log_format"),
            issues,
            allowed_values=("json", "text"),
        )
        if parsed_log_format is not None:
            out["log_format"] = parsed_log_format

    if "log_dir" in payload:
        parsed_log_dir = _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues)
        if parsed_log_dir is not None:
            out["log_dir"] = parsed_log_dir

    for key in ("log_to_file", "redact_secrets"):
        if key in payload:
            parsed_flag = _as_bool(payload[key], _join(path, key), issues)
            if parsed_flag is not None:
                out[key] = parsed_flag

    return out


def _validate_profiles(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        raw = payload[profile_name]
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        profile_obj = _as_object(raw, profile_path, issues)
        if profile_obj is None:
            continue
        out[profile_name] = _validate_profile_overlay(profile_obj, profile_path, issues)
    return out


def _validate_profile_overlay(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    allowed = {"policy", "executor", "session", "observability"}
    _reject_unknown_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for section in sorted(allowed):
        raw = payload.get(section)
        if raw is None:
            continue
        section_path = _join(path, section)
        section_obj = _as_object(raw, section_path, issues)
        if section_obj is None:
            continue
        if section == "policy":
            out[section] = _validate_policy(section_obj, section_path, issues, partial=True)
        elif section == "executor":
            out[section] = _validate_executor(section_obj, section_path, issues, partial=True)
        elif section == "session":
            out[section] = _validate_session(section_obj, section_path, issues)
        elif section == "observability":
            out[section] = _validate_observability(section_obj, section_path, issues, partial=True)
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected array, got {type(value).__name__}")
        return None
    out: list[str] = []
    ok = True
    for index, item in enumerate(value):
        parsed = _as_str(item, f"{path}[{index}]", issues)
        if parsed is None:
            ok = False
        else:
            out.append(parsed)
    return out if ok else None


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    exclusive_minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if exclusive_minimum is not None and parsed <= exclusive_minimum:
        issues.add(path, f"must be > {exclusive_minimum:g}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(key_path, "embedded secret values are forbidden in workspace config")
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        return [_deep_copy_value(item) for item in value]
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            item = value[key]
            # Flags such as ``redact_secrets`` carry no secret material.
            if _looks_sensitive_key(key) and not isinstance(item, bool):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(item, key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "ProfileOverlay",
    "WorkspaceConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "policy_from_config",
    "redact_config",
    "validate_config",
]
