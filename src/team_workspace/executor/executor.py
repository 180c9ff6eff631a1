"""Executor: the only component that writes project files or spawns processes.

Every entry point re-checks path containment and the permission policy itself
rather than trusting an upstream gate decision. Successful actions append one
record to the caller-owned audit store.
"""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from team_workspace.constants import AUDIT_COMMAND_EXECUTED, AUDIT_PATCH_APPLIED, STATE_DIR
from team_workspace.errors import (
    ExecutionFailure,
    PatchConflict,
    PathViolation,
    PolicyDenied,
    SchemaIssue,
    SchemaViolation,
)
from team_workspace.executor.audit import AuditRecord, AuditStore, FileAuditLog
from team_workspace.executor.patching import apply_file_patch, parse_unified_diff
from team_workspace.gate.decision import ApprovalGrant, GateDecision, GateVerdict, decide
from team_workspace.utils.fs import atomic_write, resolve_within
from team_workspace.utils.hashing import sha256_file

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from team_workspace.domain.messages import AgentMessage, CommandMessage, PatchMessage, RiskLevel
    from team_workspace.gate.policy import PermissionPolicy

_EXIT_NOT_FOUND = 127
_EXIT_NOT_EXECUTABLE = 126


class PatchAction(StrEnum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True, slots=True)
class ProcessOutput:
    """Raw outcome of one process run, as reported by a ``CommandRunner``."""

    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    duration_ms: float = 0.0


class CommandRunner(Protocol):
    """Injectable command runner used for deterministic/offline testing."""

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout_seconds: float | None,
    ) -> ProcessOutput: ...


class SubprocessCommandRunner:
    """Default command runner backed by ``subprocess.run`` without a shell."""

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout_seconds: float | None,
    ) -> ProcessOutput:
        started = time.perf_counter()
        try:
            completed = subprocess.run(
                list(argv),
                cwd=cwd,
                check=False,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout_seconds,
                env=dict(env),
                stdin=subprocess.DEVNULL,
            )
        except subprocess.TimeoutExpired as exc:
            return ProcessOutput(
                exit_code=None,
                stdout=_coerce_stream(exc.stdout),
                stderr=_coerce_stream(exc.stderr),
                timed_out=True,
                duration_ms=_elapsed_ms(started),
            )
        except FileNotFoundError as exc:
            return ProcessOutput(
                exit_code=_EXIT_NOT_FOUND,
                stdout="",
                stderr=f"{argv[0]}: command not found ({exc.strerror or exc})",
                duration_ms=_elapsed_ms(started),
            )
        except PermissionError as exc:
            return ProcessOutput(
                exit_code=_EXIT_NOT_EXECUTABLE,
                stdout="",
                stderr=f"{argv[0]}: permission denied ({exc.strerror or exc})",
                duration_ms=_elapsed_ms(started),
            )

        return ProcessOutput(
            exit_code=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
            duration_ms=_elapsed_ms(started),
        )


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Structured command outcome. A non-zero exit is data, not an executor error."""

    command: str
    risk: RiskLevel
    argv: tuple[str, ...]
    cwd: Path
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool
    duration_ms: float

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.exit_code == 0

    def raise_for_status(self) -> CommandResult:
        """Raise ``ExecutionFailure`` when the command did not exit cleanly."""

        if not self.succeeded:
            raise ExecutionFailure(self)
        return self

    def to_dict(self) -> dict[str, object]:
        return {
            "command": self.command,
            "risk": self.risk.value,
            "argv": list(self.argv),
            "cwd": str(self.cwd),
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "timed_out": self.timed_out,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True, slots=True)
class PatchResult:
    target: str
    path: Path
    action: PatchAction
    hunks: int
    sha256_before: str | None
    sha256_after: str | None

    def to_dict(self) -> dict[str, object]:
        return {
            "target": self.target,
            "path": str(self.path),
            "action": self.action.value,
            "hunks": self.hunks,
            "sha256_before": self.sha256_before,
            "sha256_after": self.sha256_after,
        }


class Executor:
    """Apply approved patches and run approved commands inside ``project_root``.

    Patches never touch the workspace state directory, the file behind a
    ``FileAuditLog``, or any of ``protected_paths`` (a file, or a directory
    together with everything below it).
    """

    def __init__(
        self,
        project_root: Path | str,
        *,
        policy: PermissionPolicy,
        audit: AuditStore,
        runner: CommandRunner | None = None,
        command_timeout_seconds: float | None = None,
        inherit_host_env: bool = False,
        env_overrides: Mapping[str, str] | None = None,
        protected_paths: Sequence[Path | str] = (),
        logger: Any | None = None,
    ) -> None:
        root = Path(project_root).resolve(strict=True)
        if not root.is_dir():
            raise NotADirectoryError(f"{root!s} is not a directory")
        if command_timeout_seconds is not None and command_timeout_seconds <= 0:
            raise ValueError("command_timeout_seconds must be > 0")

        self._root = root
        self._policy = policy
        self._audit = audit
        self._runner = runner if runner is not None else SubprocessCommandRunner()
        self._timeout = command_timeout_seconds
        self._inherit_host_env = bool(inherit_host_env)
        self._env_overrides = dict(env_overrides or {})
        self._protected = _protected_locations(root, audit, protected_paths)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def project_root(self) -> Path:
        return self._root

    @property
    def policy(self) -> PermissionPolicy:
        return self._policy

    @property
    def audit(self) -> AuditStore:
        return self._audit

    @property
    def protected_paths(self) -> tuple[Path, ...]:
        return self._protected

    def resolve_target(self, target: str) -> Path:
        """Resolve ``target`` under the project root or raise ``PathViolation``."""

        if not target or "\x00" in target:
            raise PathViolation(target, str(self._root))
        resolved = resolve_within(self._root, target)
        if resolved is None or resolved == self._root:
            self._logger.warning("executor_path_violation", target=target, root=str(self._root))
            raise PathViolation(target, str(self._root))
        for protected in self._protected:
            if resolved == protected or protected in resolved.parents:
                self._logger.warning(
                    "executor_protected_path", target=target, protected=str(protected)
                )
                raise PathViolation(target, str(self._root), "names a protected workspace file")
        return resolved

    def apply_patch(
        self, message: PatchMessage, *, approval: ApprovalGrant | None = None
    ) -> PatchResult:
        """Apply ``message.diff`` to ``message.file`` atomically, or change nothing."""

        path = self.resolve_target(message.file)
        self._authorize(message, approval)

        if path.exists() and not path.is_file():
            raise PatchConflict(message.file, "target is not a regular file")
        original = _read_text(path, target=message.file)
        sha_before = sha256_file(path)

        try:
            patch = parse_unified_diff(message.diff, target=message.file)
            updated = apply_file_patch(original, patch, target=message.file)
        except PatchConflict as exc:
            self._logger.warning(
                "executor_patch_conflict", target=message.file, reason=exc.reason
            )
            raise

        try:
            if updated is None:
                path.unlink()
                action = PatchAction.DELETED
            else:
                path.parent.mkdir(parents=True, exist_ok=True)
                atomic_write(path, updated)
                action = PatchAction.CREATED if original is None else PatchAction.MODIFIED
        except OSError as exc:
            self._logger.warning(
                "executor_patch_write_failed", target=message.file, error=str(exc)
            )
            reason = f"cannot write target: {exc.strerror or exc}"
            raise PatchConflict(message.file, reason) from exc

        result = PatchResult(
            target=message.file,
            path=path,
            action=action,
            hunks=len(patch.hunks),
            sha256_before=sha_before,
            sha256_after=sha256_file(path),
        )
        self._audit.append(
            AuditRecord(
                action=AUDIT_PATCH_APPLIED,
                detail=_detail_lines(
                    ("file", message.file),
                    ("action", action.value),
                    ("summary", message.summary_text),
                    ("sha256_before", sha_before or "-"),
                    ("sha256_after", result.sha256_after or "-"),
                    ("approved_by", approval.approver if approval is not None else "policy"),
                ),
            )
        )
        self._logger.info(
            "executor_patch_applied",
            target=message.file,
            patch_action=action.value,
            hunks=result.hunks,
        )
        return result

    def run_command(
        self,
        message: CommandMessage,
        *,
        approval: ApprovalGrant | None = None,
        cwd: Path | str | None = None,
    ) -> CommandResult:
        """Run the command to completion and capture exit code and both streams."""

        self._authorize(message, approval)
        resolved_cwd = self._resolve_cwd(cwd)
        argv = split_command(message.command)

        output = self._runner.run(
            argv,
            cwd=resolved_cwd,
            env=self._build_environment(),
            timeout_seconds=self._timeout,
        )
        result = CommandResult(
            command=message.command,
            risk=message.risk,
            argv=argv,
            cwd=resolved_cwd,
            exit_code=output.exit_code,
            stdout=output.stdout,
            stderr=output.stderr,
            timed_out=output.timed_out,
            duration_ms=output.duration_ms,
        )
        self._audit.append(
            AuditRecord(
                action=AUDIT_COMMAND_EXECUTED,
                detail=_detail_lines(
                    ("command", message.command),
                    ("risk", message.risk.value),
                    ("cwd", _relative_label(resolved_cwd, self._root)),
                    ("exit_code", "timeout" if output.timed_out else str(output.exit_code)),
                    ("approved_by", approval.approver if approval is not None else "policy"),
                ),
            )
        )
        self._logger.info(
            "executor_command_finished",
            command=message.command,
            risk=message.risk.value,
            exit_code=output.exit_code,
            timed_out=output.timed_out,
        )
        return result

    def _authorize(self, message: AgentMessage, approval: ApprovalGrant | None) -> GateDecision:
        decision = decide(message, self._policy)
        if decision.verdict is GateVerdict.DENY:
            self._logger.warning(
                "executor_policy_denied",
                kind=decision.kind.value,
                reason_codes=list(decision.reason_codes),
            )
            raise PolicyDenied(decision.reason_codes)
        if decision.verdict is GateVerdict.REQUIRE_APPROVAL:
            if approval is None:
                raise PolicyDenied(decision.reason_codes, "no approval was granted")
            if approval.fingerprint != decision.fingerprint:
                raise PolicyDenied(
                    ("approval_mismatch",), "approval was granted for a different message"
                )
        return decision

    def _resolve_cwd(self, cwd: Path | str | None) -> Path:
        if cwd is None:
            return self._root
        resolved = resolve_within(self._root, cwd)
        if resolved is None:
            raise PathViolation(str(cwd), str(self._root))
        if not resolved.is_dir():
            raise PathViolation(str(cwd), str(self._root), "is not an existing directory")
        return resolved

    def _build_environment(self) -> dict[str, str]:
        if self._inherit_host_env:
            merged = dict(os.environ)
        else:
            merged = {}
            for name in ("PATH", "HOME", "LANG", "SYSTEMROOT"):
                value = os.environ.get(name)
                if value:
                    merged[name] = value
        merged.update(self._env_overrides)
        return merged


def split_command(command: str) -> tuple[str, ...]:
    """Split ``command`` into argv with POSIX shell quoting rules; no shell is involved."""

    try:
        argv = tuple(shlex.split(command))
    except ValueError as exc:
        raise SchemaViolation((SchemaIssue("content.command", f"cannot be parsed: {exc}"),)) from exc
    if not argv:
        raise SchemaViolation((SchemaIssue("content.command", "must not be empty"),))
    return argv


def _read_text(path: Path, *, target: str) -> str | None:
    if not path.exists():
        return None
    try:
        with path.open("r", encoding="utf-8", newline="") as handle:
            return handle.read()
    except UnicodeDecodeError as exc:
        raise PatchConflict(target, "target is not a UTF-8 text file") from exc
    except OSError as exc:
        raise PatchConflict(target, f"cannot read target: {exc.strerror or exc}") from exc


def _protected_locations(
    root: Path, audit: AuditStore, extra: Sequence[Path | str]
) -> tuple[Path, ...]:
    candidates = [root / STATE_DIR, *(Path(item) for item in extra)]
    if isinstance(audit, FileAuditLog):
        candidates.append(audit.path)
    resolved: list[Path] = []
    for candidate in candidates:
        location = (candidate if candidate.is_absolute() else root / candidate).resolve()
        if location not in resolved:
            resolved.append(location)
    return tuple(resolved)


def _detail_lines(*pairs: tuple[str, str]) -> str:
    return "\n".join(f"{key}: {' '.join(value.splitlines())}" for key, value in pairs)


def _relative_label(path: Path, root: Path) -> str:
    relative = path.relative_to(root).as_posix()
    return relative or "."


def _coerce_stream(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


__all__ = [
    "CommandResult",
    "CommandRunner",
    "Executor",
    "PatchAction",
    "PatchResult",
    "ProcessOutput",
    "SubprocessCommandRunner",
    "split_command",
]
