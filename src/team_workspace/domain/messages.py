"""Typed agent messages: a closed tagged union over four message kinds.

Instances are produced only by :mod:`team_workspace.gate.validator`; code
downstream of the validator never inspects an untyped record again.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import ClassVar, Final

from team_workspace.utils.hashing import sha256_text

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_SUMMARY_WIDTH: Final[int] = 72


class Role(StrEnum):
    USER = "user"
    PLANNER = "planner"
    ENGINEER = "engineer"
    REVIEWER = "reviewer"
    TESTER = "tester"
    SYSTEM = "system"


class MessageKind(StrEnum):
    PLAN = "plan"
    PATCH = "patch"
    COMMAND = "command"
    TEXT = "text"


class TaskAction(StrEnum):
    CREATE_FILE = "create_file"
    MODIFY_FILE = "modify_file"
    RUN_COMMAND = "run_command"
    REVIEW = "review"
    TEST = "test"
    RESEARCH = "research"


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Which task actions each role has a handler for. Roles missing here cannot
# be assigned plan tasks.
ROLE_CAPABILITIES: Final[Mapping[Role, frozenset[TaskAction]]] = {
    Role.PLANNER: frozenset({TaskAction.RESEARCH, TaskAction.REVIEW}),
    Role.ENGINEER: frozenset(
        {
            TaskAction.CREATE_FILE,
            TaskAction.MODIFY_FILE,
            TaskAction.RUN_COMMAND,
            TaskAction.RESEARCH,
            TaskAction.TEST,
        }
    ),
    Role.REVIEWER: frozenset({TaskAction.REVIEW, TaskAction.RESEARCH}),
    Role.TESTER: frozenset({TaskAction.TEST, TaskAction.RUN_COMMAND, TaskAction.REVIEW}),
}

PATH_REQUIRED_ACTIONS: Final[frozenset[TaskAction]] = frozenset(
    {TaskAction.CREATE_FILE, TaskAction.MODIFY_FILE}
)


def role_can_perform(role: Role, action: TaskAction) -> bool:
    return action in ROLE_CAPABILITIES.get(role, frozenset())


class CanonicalMessage:
    """Mixin for canonical dict/json serialization of message variants."""

    kind: ClassVar[MessageKind]
    role: Role | None

    def content(self) -> dict[str, JSONValue]:
        raise NotImplementedError

    def summary(self) -> str:
        raise NotImplementedError

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "kind": self.kind.value,
            "content": self.content(),
        }
        if self.role is not None:
            payload["role"] = self.role.value
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def fingerprint(self) -> str:
        """SHA-256 of the canonical JSON form; binds approvals to exact content."""

        return sha256_text(self.to_json())


@dataclass(frozen=True, slots=True)
class Task:
    id: str
    assignee: Role
    action: TaskAction
    instructions: str
    path: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "id": self.id,
            "assignee": self.assignee.value,
            "action": self.action.value,
            "instructions": self.instructions,
        }
        if self.path is not None:
            payload["path"] = self.path
        return payload


@dataclass(frozen=True, slots=True)
class PlanMessage(CanonicalMessage):
    goal: str
    tasks: tuple[Task, ...]
    role: Role | None = None

    kind: ClassVar[MessageKind] = MessageKind.PLAN

    def content(self) -> dict[str, JSONValue]:
        return {"goal": self.goal, "tasks": [task.to_dict() for task in self.tasks]}

    def summary(self) -> str:
        return _shorten(f"plan: {self.goal} ({len(self.tasks)} task(s))")

    def task_ids(self) -> tuple[str, ...]:
        return tuple(task.id for task in self.tasks)


@dataclass(frozen=True, slots=True)
class PatchMessage(CanonicalMessage):
    file: str
    diff: str
    summary_text: str
    role: Role | None = None

    kind: ClassVar[MessageKind] = MessageKind.PATCH

    def content(self) -> dict[str, JSONValue]:
        return {"file": self.file, "diff": self.diff, "summary": self.summary_text}

    def summary(self) -> str:
        return _shorten(f"patch {self.file}: {self.summary_text}")


@dataclass(frozen=True, slots=True)
class CommandMessage(CanonicalMessage):
    command: str
    reason: str
    risk: RiskLevel
    role: Role | None = None

    kind: ClassVar[MessageKind] = MessageKind.COMMAND

    def content(self) -> dict[str, JSONValue]:
        return {"command": self.command, "reason": self.reason, "risk": self.risk.value}

    def summary(self) -> str:
        return _shorten(f"command [{self.risk.value}] {self.command}")


@dataclass(frozen=True, slots=True)
class TextMessage(CanonicalMessage):
    text: str
    role: Role | None = None

    kind: ClassVar[MessageKind] = MessageKind.TEXT

    def content(self) -> dict[str, JSONValue]:
        return {"text": self.text}

    def summary(self) -> str:
        return _shorten(self.text.splitlines()[0] if self.text else "")


AgentMessage = PlanMessage | PatchMessage | CommandMessage | TextMessage


def _shorten(text: str) -> str:
    collapsed = " ".join(text.split())
    if len(collapsed) <= _SUMMARY_WIDTH:
        return collapsed
    return collapsed[: _SUMMARY_WIDTH - 3] + "..."


__all__ = [
    "PATH_REQUIRED_ACTIONS",
    "ROLE_CAPABILITIES",
    "AgentMessage",
    "CanonicalMessage",
    "CommandMessage",
    "JSONScalar",
    "JSONValue",
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
