"""Error taxonomy shared by the validator, gate and executor."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from team_workspace.executor.executor import CommandResult


class WorkspaceError(Exception):
    """Base error for every failure surfaced by the workspace core."""


@dataclass(frozen=True, slots=True)
class SchemaIssue:
    """Single violated constraint, addressed by dotted field path."""

    path: str
    message: str

    def render(self) -> str:
        return f"{self.path}: {self.message}"


class SchemaViolation(WorkspaceError):
    """Raised when a raw record does not validate as exactly one message kind."""

    def __init__(self, issues: Sequence[SchemaIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.render()}" for item in self.issues)
        super().__init__(f"invalid agent message:\n{rendered}")

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(item.path for item in self.issues)


class PathViolation(WorkspaceError):
    """Raised when a target path escapes the project root or names a protected location."""

    def __init__(self, target: str, root: str, reason: str | None = None) -> None:
        self.target = target
        self.root = root
        self.reason = reason or "resolves outside project root"
        super().__init__(f"path {target!r} {self.reason} ({root!r})")


class PatchConflict(WorkspaceError):
    """Raised when a diff does not apply cleanly to the current file contents."""

    def __init__(self, target: str, reason: str) -> None:
        self.target = target
        self.reason = reason
        super().__init__(f"patch for {target!r} does not apply: {reason}")


class PolicyDenied(WorkspaceError):
    """Raised when the permission policy refuses a command or patch."""

    def __init__(self, reason_codes: Sequence[str], detail: str | None = None) -> None:
        self.reason_codes = tuple(reason_codes)
        summary = ", ".join(self.reason_codes) or "denied"
        message = f"blocked by policy: {summary}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ExecutionFailure(WorkspaceError):
    """A command exited non-zero. Raised only on explicit request by the caller."""

    def __init__(self, result: CommandResult) -> None:
        self.result = result
        status = "timed out" if result.timed_out else f"exited with {result.exit_code}"
        super().__init__(f"command {result.command!r} {status}")


__all__ = [
    "ExecutionFailure",
    "PatchConflict",
    "PathViolation",
    "PolicyDenied",
    "SchemaIssue",
    "SchemaViolation",
    "WorkspaceError",
]
