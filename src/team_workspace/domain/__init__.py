"""
team-workspace — domain types

Purpose
- Re-export the typed message union and its enums. The domain layer is free of
  IO side effects.
"""

from team_workspace.domain.messages import (
    PATH_REQUIRED_ACTIONS,
    ROLE_CAPABILITIES,
    AgentMessage,
    CommandMessage,
    MessageKind,
    PatchMessage,
    PlanMessage,
    RiskLevel,
    Role,
    Task,
    TaskAction,
    TextMessage,
    role_can_perform,
)

__all__ = [
    "PATH_REQUIRED_ACTIONS",
    "ROLE_CAPABILITIES",
    "AgentMessage",
    "CommandMessage",
    "MessageKind",
    "PatchMessage",
    "PlanMessage",
    "RiskLevel",
    "Role",
    "Task",
    "TaskAction",
    "TextMessage",
    "role_can_perform",
]
