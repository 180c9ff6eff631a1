"""
team-workspace — agent message validation.

Purpose
- Convert an untyped record into exactly one typed message variant, or fail
  with a ``SchemaViolation`` listing every violated constraint.

Functional requirements
- Strict: unknown keys at any level are violations.
- Dispatch on the ``kind`` discriminator; an unknown kind is reported as such.
- No side effects; a pure function of the input and the fixed schema table.
"""

from __future__ import annotations

import json
import shlex
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Final, TypeVar

import yaml

from team_workspace.constants import (
    DIFF_MARKERS,
    MAX_DIFF_LENGTH,
    MAX_PLAN_TASKS,
    MAX_TEXT_LENGTH,
    MIN_COMMAND_LENGTH,
    MIN_DIFF_LENGTH,
    MIN_INSTRUCTIONS_LENGTH,
)
from team_workspace.domain.messages import (
    PATH_REQUIRED_ACTIONS,
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
from team_workspace.errors import SchemaIssue, SchemaViolation

TEnum = TypeVar("TEnum", bound=Enum)

_ENVELOPE_REQUIRED: Final[frozenset[str]] = frozenset({"kind", "content"})
_ENVELOPE_OPTIONAL: Final[frozenset[str]] = frozenset({"role"})
_TASK_REQUIRED: Final[frozenset[str]] = frozenset({"id", "assignee", "action", "instructions"})
_TASK_OPTIONAL: Final[frozenset[str]] = frozenset({"path"})


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Validation result carrying the typed message when no issues were found."""

    message: AgentMessage | None
    issues: tuple[SchemaIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.message is not None and not self.issues


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[SchemaIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(SchemaIssue(path=path, message=message))

    def items(self) -> tuple[SchemaIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def validate_message(raw: object) -> AgentMessage:
    """Validate ``raw`` and return a typed message, raising ``SchemaViolation`` on failure."""

    result = try_validate_message(raw)
    if result.message is None:
        raise SchemaViolation(result.issues)
    return result.message


def try_validate_message(raw: object) -> ValidationResult:
    """Validate ``raw`` and return every issue found instead of raising."""

    issues = _IssueCollector()
    envelope = _as_object(raw, "<root>", issues)
    if envelope is None:
        return ValidationResult(message=None, issues=issues.items())

    _reject_unknown_keys(envelope, _ENVELOPE_REQUIRED | _ENVELOPE_OPTIONAL, "", issues)
    _require_keys(envelope, _ENVELOPE_REQUIRED, "", issues)

    role: Role | None = None
    if "role" in envelope:
        role = _as_enum(Role, envelope["role"], "role", issues)

    kind: MessageKind | None = None
    if "kind" in envelope:
        kind = _as_kind(envelope["kind"], issues)

    content: dict[str, object] | None = None
    if "content" in envelope:
        content = _as_object(envelope["content"], "content", issues)

    message: AgentMessage | None = None
    if kind is not None and content is not None:
        builder = _CONTENT_VALIDATORS[kind]
        message = builder(content, role, issues)

    if issues.has_issues:
        return ValidationResult(message=None, issues=issues.items())
    return ValidationResult(message=message, issues=())


def load_message(text: str, *, fmt: str = "auto") -> AgentMessage:
    """Parse JSON or YAML text and validate the resulting record."""

    return validate_message(parse_record(text, fmt=fmt))


def parse_record(text: str, *, fmt: str = "auto") -> object:
    """Parse ``text`` as JSON (``fmt="json"``), YAML (``"yaml"``) or either (``"auto"``)."""

    if fmt not in {"auto", "json", "yaml"}:
        raise ValueError(f"unsupported message format {fmt!r}")
    if fmt in {"auto", "json"}:
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            if fmt == "json":
                raise SchemaViolation((SchemaIssue("<root>", f"invalid JSON: {exc}"),)) from exc
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise SchemaViolation((SchemaIssue("<root>", f"invalid YAML: {exc}"),)) from exc


def _validate_plan(
    content: Mapping[str, object], role: Role | None, issues: _IssueCollector
) -> PlanMessage | None:
    _reject_unknown_keys(content, {"goal", "tasks"}, "content", issues)
    _require_keys(content, {"goal", "tasks"}, "content", issues)

    goal = None
    if "goal" in content:
        goal = _as_str(content["goal"], "content.goal", issues, max_len=MAX_TEXT_LENGTH)

    tasks: list[Task] = []
    tasks_ok = False
    if "tasks" in content:
        raw_tasks = content["tasks"]
        if not isinstance(raw_tasks, (list, tuple)):
            issues.add("content.tasks", f"expected array, got {type(raw_tasks).__name__}")
        elif not raw_tasks:
            issues.add("content.tasks", "must not be empty")
        elif len(raw_tasks) > MAX_PLAN_TASKS:
            issues.add("content.tasks", f"too many tasks (>{MAX_PLAN_TASKS})")
        else:
            tasks_ok = True
            for index, item in enumerate(raw_tasks):
                task = _validate_task(item, f"content.tasks[{index}]", issues)
                if task is None:
                    tasks_ok = False
                else:
                    tasks.append(task)

    seen: dict[str, int] = {}
    for index, task in enumerate(tasks):
        if task.id in seen:
            issues.add(
                f"content.tasks[{index}].id",
                f"duplicate task id {task.id!r} (first used at index {seen[task.id]})",
            )
        else:
            seen[task.id] = index

    if goal is None or not tasks_ok:
        return None
    return PlanMessage(goal=goal, tasks=tuple(tasks), role=role)


def _validate_task(value: object, path: str, issues: _IssueCollector) -> Task | None:
    task = _as_object(value, path, issues)
    if task is None:
        return None

    _reject_unknown_keys(task, _TASK_REQUIRED | _TASK_OPTIONAL, path, issues)
    _require_keys(task, _TASK_REQUIRED, path, issues)

    task_id = _as_str(task["id"], f"{path}.id", issues, max_len=128) if "id" in task else None
    assignee = (
        _as_enum(Role, task["assignee"], f"{path}.assignee", issues)
        if "assignee" in task
        else None
    )
    action = (
        _as_enum(TaskAction, task["action"], f"{path}.action", issues)
        if "action" in task
        else None
    )
    instructions = (
        _as_str(
            task["instructions"],
            f"{path}.instructions",
            issues,
            min_len=MIN_INSTRUCTIONS_LENGTH,
            max_len=MAX_TEXT_LENGTH,
        )
        if "instructions" in task
        else None
    )

    target: str | None = None
    if task.get("path") is not None:
        target = _as_str(task["path"], f"{path}.path", issues, max_len=1024)

    if assignee is not None and action is not None and not role_can_perform(assignee, action):
        issues.add(
            f"{path}.action",
            f"role {assignee.value!r} has no handler for action {action.value!r}",
        )
    if action in PATH_REQUIRED_ACTIONS and task.get("path") is None:
        issues.add(f"{path}.path", f"required for action {action.value!r}")

    if task_id is None or assignee is None or action is None or instructions is None:
        return None
    return Task(
        id=task_id,
        assignee=assignee,
        action=action,
        instructions=instructions,
        path=target,
    )


def _validate_patch(
    content: Mapping[str, object], role: Role | None, issues: _IssueCollector
) -> PatchMessage | None:
    _reject_unknown_keys(content, {"file", "diff", "summary"}, "content", issues)
    _require_keys(content, {"file", "diff", "summary"}, "content", issues)

    target = (
        _as_str(content["file"], "content.file", issues, max_len=1024)
        if "file" in content
        else None
    )
    if target is not None and "\x00" in target:
        issues.add("content.file", "must not contain NUL bytes")
        target = None

    diff = None
    if "diff" in content:
        diff = _as_str(
            content["diff"],
            "content.diff",
            issues,
            min_len=MIN_DIFF_LENGTH,
            max_len=MAX_DIFF_LENGTH,
            strip=False,
        )
        if diff is not None and not _looks_like_unified_diff(diff):
            markers = ", ".join(repr(marker.strip()) for marker in DIFF_MARKERS)
            issues.add("content.diff", f"must start with a unified diff marker ({markers})")
            diff = None

    summary = (
        _as_str(content["summary"], "content.summary", issues, max_len=MAX_TEXT_LENGTH)
        if "summary" in content
        else None
    )

    if target is None or diff is None or summary is None:
        return None
    return PatchMessage(file=target, diff=diff, summary_text=summary, role=role)


def _validate_command(
    content: Mapping[str, object], role: Role | None, issues: _IssueCollector
) -> CommandMessage | None:
    _reject_unknown_keys(content, {"command", "reason", "risk"}, "content", issues)
    _require_keys(content, {"command", "reason", "risk"}, "content", issues)

    command = (
        _as_str(
            content["command"],
            "content.command",
            issues,
            min_len=MIN_COMMAND_LENGTH,
            max_len=MAX_TEXT_LENGTH,
        )
        if "command" in content
        else None
    )
    if command is not None and "\x00" in command:
        issues.add("content.command", "must not contain NUL bytes")
        command = None
    if command is not None:
        try:
            argv = shlex.split(command)
        except ValueError as exc:
            issues.add("content.command", f"cannot be parsed: {exc}")
            command = None
        else:
            if not argv:
                issues.add("content.command", "must name a program to run")
                command = None

    reason = (
        _as_str(content["reason"], "content.reason", issues, max_len=MAX_TEXT_LENGTH)
        if "reason" in content
        else None
    )
    risk = (
        _as_enum(RiskLevel, content["risk"], "content.risk", issues)
        if "risk" in content
        else None
    )

    if command is None or reason is None or risk is None:
        return None
    return CommandMessage(command=command, reason=reason, risk=risk, role=role)


def _validate_text(
    content: Mapping[str, object], role: Role | None, issues: _IssueCollector
) -> TextMessage | None:
    _reject_unknown_keys(content, {"text"}, "content", issues)
    _require_keys(content, {"text"}, "content", issues)

    text = (
        _as_str(content["text"], "content.text", issues, max_len=MAX_TEXT_LENGTH)
        if "text" in content
        else None
    )
    if text is None:
        return None
    return TextMessage(text=text, role=role)


_ContentValidator = Callable[
    [Mapping[str, object], Role | None, _IssueCollector], AgentMessage | None
]

_CONTENT_VALIDATORS: Final[Mapping[MessageKind, _ContentValidator]] = {
    MessageKind.PLAN: _validate_plan,
    MessageKind.PATCH: _validate_patch,
    MessageKind.COMMAND: _validate_command,
    MessageKind.TEXT: _validate_text,
}


def _looks_like_unified_diff(diff: str) -> bool:
    for line in diff.splitlines():
        if not line.strip():
            continue
        return line.startswith(DIFF_MARKERS)
    return False


def _as_kind(value: object, issues: _IssueCollector) -> MessageKind | None:
    if not isinstance(value, str):
        issues.add("kind", f"expected string discriminator, got {type(value).__name__}")
        return None
    try:
        return MessageKind(value)
    except ValueError:
        allowed = ", ".join(item.value for item in MessageKind)
        issues.add("kind", f"unrecognized message kind {value!r}; expected one of: {allowed}")
        return None


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object keys must be strings, got {type(key).__name__}")
            return None
        parsed[key] = item
    return parsed


def _as_str(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    min_len: int = 1,
    max_len: int,
    strip: bool = True,
) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    normalized = value.strip() if strip else value
    measured = normalized if strip else normalized.strip()
    if len(measured) < min_len:
        issues.add(path, f"must be at least {min_len} character(s)")
        return None
    if len(normalized) > max_len:
        issues.add(path, f"must be <= {max_len} characters")
        return None
    return normalized


def _as_enum(
    enum_type: type[TEnum], value: object, path: str, issues: _IssueCollector
) -> TEnum | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string enum value, got {type(value).__name__}")
        return None
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(str(item.value) for item in enum_type)
        issues.add(path, f"invalid value {value!r}; expected one of: {allowed}")
        return None


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str] | frozenset[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unexpected field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str] | frozenset[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


__all__ = [
    "ValidationResult",
    "load_message",
    "parse_record",
    "try_validate_message",
    "validate_message",
]
