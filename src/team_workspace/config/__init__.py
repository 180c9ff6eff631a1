"""
team-workspace config package public API.

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``workspace.toml`` + ``TEAMWS_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from team_workspace.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    ConfigSource,
    dump_effective_config,
    load_config,
    normalize_paths,
    resolve_config_source,
)
from team_workspace.config.schema import (
    BUILTIN_PROFILE_NAMES,
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    ProfileOverlay,
    WorkspaceConfig,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    policy_from_config,
    redact_config,
    validate_config,
)

__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigSource",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PATH_FIELDS",
    "ProfileOverlay",
    "WorkspaceConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "load_config",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "policy_from_config",
    "redact_config",
    "resolve_config_source",
    "validate_config",
]
