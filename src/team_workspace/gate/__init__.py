"""
team-workspace — validation and approval gate

Purpose
- Turn untyped agent records into typed messages and decide whether their side
  effects may proceed. Nothing in this package touches the filesystem.
"""

from team_workspace.gate.decision import (
    ApprovalGrant,
    GateDecision,
    GateVerdict,
    decide,
    grant_approval,
)
from team_workspace.gate.policy import PermissionPolicy, PolicyConfigError
from team_workspace.gate.validator import (
    ValidationResult,
    load_message,
    parse_record,
    try_validate_message,
    validate_message,
)

__all__ = [
    "ApprovalGrant",
    "GateDecision",
    "GateVerdict",
    "PermissionPolicy",
    "PolicyConfigError",
    "ValidationResult",
    "decide",
    "grant_approval",
    "load_message",
    "parse_record",
    "try_validate_message",
    "validate_message",
]
