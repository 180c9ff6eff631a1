"""Stable constants shared across the validator, gate and executor."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

CONFIG_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the project root unless overridden by config).
STATE_DIR: Final[PurePosixPath] = PurePosixPath(".team_workspace")
AUDIT_LOG_PATH: Final[PurePosixPath] = STATE_DIR / "audit.log"
LOG_DIR: Final[PurePosixPath] = STATE_DIR / "logs"

# Minimum lengths enforced by the message validator.
MIN_INSTRUCTIONS_LENGTH: Final[int] = 5
MIN_DIFF_LENGTH: Final[int] = 10
MIN_COMMAND_LENGTH: Final[int] = 2
MAX_TEXT_LENGTH: Final[int] = 64 * 1024
MAX_DIFF_LENGTH: Final[int] = 1024 * 1024
MAX_PLAN_TASKS: Final[int] = 256

# First non-blank line of a patch body must start with one of these.
DIFF_MARKERS: Final[tuple[str, ...]] = ("diff --git ", "--- ", "Index: ", "@@ ")

# Audit action tags.
AUDIT_PATCH_APPLIED: Final[str] = "PATCH_APPLIED"
AUDIT_COMMAND_EXECUTED: Final[str] = "COMMAND_EXECUTED"

__all__ = [
    "AUDIT_COMMAND_EXECUTED",
    "AUDIT_LOG_PATH",
    "AUDIT_PATCH_APPLIED",
    "CONFIG_SCHEMA_VERSION",
    "DIFF_MARKERS",
    "LOG_DIR",
    "MAX_DIFF_LENGTH",
    "MAX_PLAN_TASKS",
    "MAX_TEXT_LENGTH",
    "MIN_COMMAND_LENGTH",
    "MIN_DIFF_LENGTH",
    "MIN_INSTRUCTIONS_LENGTH",
    "STATE_DIR",
]
