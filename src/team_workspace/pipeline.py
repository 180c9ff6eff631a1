"""One message through validator, gate and executor.

``MessagePipeline.handle`` performs at most one validation pass, one gate
decision, one approval request and one executor call. It never retries; the
returned ``PipelineOutcome`` carries feedback text meant for the producer of
the message.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog

from team_workspace.domain.messages import (
    AgentMessage,
    CommandMessage,
    PatchMessage,
)
from team_workspace.errors import (
    PathViolation,
    PolicyDenied,
    SchemaViolation,
    WorkspaceError,
)
from team_workspace.executor.executor import CommandResult, Executor, PatchResult
from team_workspace.gate.decision import ApprovalGrant, GateDecision, GateVerdict, decide
from team_workspace.gate.validator import validate_message
from team_workspace.observability.logging import correlation_scope
from team_workspace.session.history import HistoryEntry, SessionHistory

Approver = Callable[[AgentMessage, GateDecision], ApprovalGrant | None]


class OutcomeStatus(StrEnum):
    REJECTED = "rejected"
    DENIED = "denied"
    DECLINED = "declined"
    EXECUTED = "executed"
    FAILED = "failed"
    RECORDED = "recorded"


@dataclass(frozen=True, slots=True)
class PipelineOutcome:
    status: OutcomeStatus
    feedback: str
    message: AgentMessage | None = None
    decision: GateDecision | None = None
    result: PatchResult | CommandResult | None = None
    error: WorkspaceError | None = None

    @property
    def ok(self) -> bool:
        return self.status in {OutcomeStatus.EXECUTED, OutcomeStatus.RECORDED}


class MessagePipeline:
    """Synchronous validate -> gate -> (approve) -> execute for one message at a time."""

    def __init__(
        self,
        executor: Executor,
        *,
        history: SessionHistory | None = None,
        approver: Approver | None = None,
        logger: Any | None = None,
    ) -> None:
        self._executor = executor
        self._history = history
        self._approver = approver
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def history(self) -> SessionHistory | None:
        return self._history

    def handle(self, raw: object, *, cwd: Path | str | None = None) -> PipelineOutcome:
        try:
            message = validate_message(raw)
        except SchemaViolation as exc:
            outcome = PipelineOutcome(
                status=OutcomeStatus.REJECTED,
                feedback=_schema_feedback(exc),
                error=exc,
            )
            self._logger.info("pipeline_message_rejected", issues=len(exc.issues))
            self._record(outcome)
            return outcome

        fingerprint = message.fingerprint()
        with correlation_scope(message_id=fingerprint[:16]):
            outcome = self._handle_valid(message, cwd=cwd)
            self._logger.info(
                "pipeline_message_handled",
                kind=message.kind.value,
                status=outcome.status.value,
            )
        self._record(outcome)
        return outcome

    def _handle_valid(self, message: AgentMessage, *, cwd: Path | str | None) -> PipelineOutcome:
        decision = decide(message, self._executor.policy)

        if decision.verdict is GateVerdict.DENY:
            error = PolicyDenied(decision.reason_codes)
            return PipelineOutcome(
                status=OutcomeStatus.DENIED,
                feedback=f"{message.kind.value} denied: {', '.join(decision.reason_codes)}",
                message=message,
                decision=decision,
                error=error,
            )

        if not isinstance(message, (PatchMessage, CommandMessage)):
            return PipelineOutcome(
                status=OutcomeStatus.RECORDED,
                feedback=f"{message.kind.value} recorded",
                message=message,
                decision=decision,
            )

        grant: ApprovalGrant | None = None
        if decision.verdict is GateVerdict.REQUIRE_APPROVAL:
            grant = self._approver(message, decision) if self._approver is not None else None
            if grant is None:
                return PipelineOutcome(
                    status=OutcomeStatus.DECLINED,
                    feedback=f"{message.kind.value} was not approved",
                    message=message,
                    decision=decision,
                )

        try:
            if isinstance(message, PatchMessage):
                patch_result = self._executor.apply_patch(message, approval=grant)
                return PipelineOutcome(
                    status=OutcomeStatus.EXECUTED,
                    feedback=f"patch {patch_result.action.value} {message.file}",
                    message=message,
                    decision=decision,
                    result=patch_result,
                )
            command_result = self._executor.run_command(message, approval=grant, cwd=cwd)
        except (PathViolation, PolicyDenied) as exc:
            return PipelineOutcome(
                status=OutcomeStatus.DENIED,
                feedback=str(exc),
                message=message,
                decision=decision,
                error=exc,
            )
        except WorkspaceError as exc:
            return PipelineOutcome(
                status=OutcomeStatus.FAILED,
                feedback=str(exc),
                message=message,
                decision=decision,
                error=exc,
            )

        if command_result.succeeded:
            status, feedback = OutcomeStatus.EXECUTED, "command exited with 0"
        elif command_result.timed_out:
            status, feedback = OutcomeStatus.FAILED, "command timed out"
        else:
            status = OutcomeStatus.FAILED
            feedback = f"command exited with {command_result.exit_code}"
        return PipelineOutcome(
            status=status,
            feedback=feedback,
            message=message,
            decision=decision,
            result=command_result,
        )

    def _record(self, outcome: PipelineOutcome) -> None:
        if self._history is None:
            return
        message = outcome.message
        if message is None:
            entry = HistoryEntry(
                role=None,
                kind=None,
                status=outcome.status.value,
                summary=outcome.feedback.splitlines()[0],
            )
        else:
            entry = HistoryEntry(
                role=message.role,
                kind=message.kind,
                status=outcome.status.value,
                summary=message.summary(),
            )
        self._history.append(entry)


def _schema_feedback(exc: SchemaViolation) -> str:
    lines = ["message rejected; fix the following and resend:"]
    lines.extend(f"- {issue.render()}" for issue in exc.issues)
    return "\n".join(lines)


__all__ = ["Approver", "MessagePipeline", "OutcomeStatus", "PipelineOutcome"]
