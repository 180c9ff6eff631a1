"""
team-workspace — unit tests for the message pipeline

What this test file should cover
- Each outcome status reachable from one raw message.
- Feedback text suitable for resending a corrected message.
- Approver invoked only when the gate asks for approval.
- One history entry per handled message.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path

import pytest

from team_workspace.domain.messages import AgentMessage
from team_workspace.errors import PatchConflict, PathViolation
from team_workspace.executor.audit import MemoryAuditLog
from team_workspace.executor.executor import Executor, ProcessOutput
from team_workspace.gate.decision import ApprovalGrant, GateDecision, grant_approval
from team_workspace.gate.policy import PermissionPolicy
from team_workspace.pipeline import MessagePipeline, OutcomeStatus
from team_workspace.session.history import SessionHistory

PANDAS = {
    "role": "engineer",
    "kind": "command",
    "content": {"command": "pip install pandas", "reason": "needed", "risk": "low"},
}
README_PATCH = {
    "role": "engineer",
    "kind": "patch",
    "content": {
        "file": "README.md",
        "diff": "--- a/README.md\n+++ b/README.md\n@@ -1 +1 @@\n-# Demo\n+# Demo project\n",
        "summary": "expand title",
    },
}


class StubRunner:
    def __init__(self, output: ProcessOutput | None = None) -> None:
        self.output = output or ProcessOutput(0, "", "")
        self.calls: list[tuple[str, ...]] = []

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout_seconds: float | None,
    ) -> ProcessOutput:
        self.calls.append(tuple(argv))
        return self.output


class CountingApprover:
    def __init__(self, approve: bool) -> None:
        self.approve = approve
        self.seen: list[GateDecision] = []

    def __call__(self, message: AgentMessage, decision: GateDecision) -> ApprovalGrant | None:
        self.seen.append(decision)
        return grant_approval(decision, approver="tester") if self.approve else None


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    (tmp_path / "README.md").write_text("# Demo\n", encoding="utf-8")
    return tmp_path


def _pipeline(
    root: Path,
    *,
    policy: PermissionPolicy | None = None,
    runner: StubRunner | None = None,
    approver: CountingApprover | None = None,
) -> tuple[MessagePipeline, MemoryAuditLog, SessionHistory]:
    audit = MemoryAuditLog()
    history = SessionHistory()
    executor = Executor(
        root,
        policy=policy or PermissionPolicy(),
        audit=audit,
        runner=runner or StubRunner(),
    )
    return MessagePipeline(executor, history=history, approver=approver), audit, history


def test_invalid_message_is_rejected_with_resendable_feedback(project: Path) -> None:
    pipeline, audit, history = _pipeline(project)

    outcome = pipeline.handle({"role": "planner", "kind": "execute_now", "content": {}})

    assert outcome.status is OutcomeStatus.REJECTED
    assert not outcome.ok
    assert outcome.feedback.splitlines()[0] == "message rejected; fix the following and resend:"
    assert outcome.feedback.splitlines()[1].startswith("- kind: unrecognized message kind")
    assert audit.records() == ()
    (entry,) = history.entries()
    assert entry.status == "rejected"
    assert entry.kind is None


def test_approved_command_executes_once(project: Path) -> None:
    runner = StubRunner()
    approver = CountingApprover(approve=True)
    pipeline, audit, history = _pipeline(project, runner=runner, approver=approver)

    outcome = pipeline.handle(PANDAS)

    assert outcome.status is OutcomeStatus.EXECUTED
    assert outcome.feedback == "command exited with 0"
    assert runner.calls == [("pip", "install", "pandas")]
    assert len(approver.seen) == 1
    assert len(audit.records()) == 1
    assert [entry.status for entry in history] == ["executed"]


def test_declined_command_never_runs(project: Path) -> None:
    runner = StubRunner()
    pipeline, audit, _ = _pipeline(project, runner=runner, approver=CountingApprover(approve=False))

    outcome = pipeline.handle(PANDAS)

    assert outcome.status is OutcomeStatus.DECLINED
    assert outcome.feedback == "command was not approved"
    assert runner.calls == []
    assert audit.records() == ()


def test_missing_approver_declines(project: Path) -> None:
    pipeline, _, _ = _pipeline(project)

    assert pipeline.handle(PANDAS).status is OutcomeStatus.DECLINED


def test_denied_command_skips_the_approver(project: Path) -> None:
    approver = CountingApprover(approve=True)
    pipeline, _, _ = _pipeline(project, approver=approver)
    raw = {**PANDAS, "content": {**PANDAS["content"], "command": "rm -rf build", "risk": "high"}}

    outcome = pipeline.handle(raw)

    assert outcome.status is OutcomeStatus.DENIED
    assert outcome.feedback == "command denied: high_risk_disabled"
    assert approver.seen == []


def test_failing_command_is_reported_with_exit_code(project: Path) -> None:
    pipeline, audit, _ = _pipeline(
        project, runner=StubRunner(ProcessOutput(2, "", "nope")), approver=CountingApprover(True)
    )

    outcome = pipeline.handle(PANDAS)

    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.feedback == "command exited with 2"
    assert len(audit.records()) == 1


def test_timed_out_command_is_reported(project: Path) -> None:
    pipeline, _, _ = _pipeline(
        project,
        runner=StubRunner(ProcessOutput(None, "", "", timed_out=True)),
        approver=CountingApprover(True),
    )

    assert pipeline.handle(PANDAS).feedback == "command timed out"


def test_auto_applied_patch_skips_approval(project: Path) -> None:
    approver = CountingApprover(approve=False)
    pipeline, audit, _ = _pipeline(
        project, policy=PermissionPolicy(auto_apply_patches=True), approver=approver
    )

    outcome = pipeline.handle(README_PATCH)

    assert outcome.status is OutcomeStatus.EXECUTED
    assert outcome.feedback == "patch modified README.md"
    assert approver.seen == []
    assert (project / "README.md").read_text(encoding="utf-8") == "# Demo project\n"
    assert len(audit.records()) == 1


def test_conflicting_patch_fails_without_side_effects(project: Path) -> None:
    pipeline, audit, _ = _pipeline(project, policy=PermissionPolicy(auto_apply_patches=True))
    pipeline.handle(README_PATCH)

    outcome = pipeline.handle(README_PATCH)

    assert outcome.status is OutcomeStatus.FAILED
    assert "already applied" in outcome.feedback
    assert len(audit.records()) == 1


def test_escaping_patch_is_denied(project: Path) -> None:
    pipeline, audit, _ = _pipeline(project, policy=PermissionPolicy(auto_apply_patches=True))
    raw = {**README_PATCH, "content": {**README_PATCH["content"], "file": "../../etc/passwd"}}

    outcome = pipeline.handle(raw)

    assert outcome.status is OutcomeStatus.DENIED
    assert "path_traversal" in outcome.feedback
    assert audit.records() == ()


def test_missing_cwd_is_reported_and_recorded(project: Path) -> None:
    runner = StubRunner()
    pipeline, audit, history = _pipeline(project, runner=runner, approver=CountingApprover(True))
    raw = {**PANDAS, "content": {**PANDAS["content"], "command": "ls -la"}}

    outcome = pipeline.handle(raw, cwd="does-not-exist")

    assert outcome.status is OutcomeStatus.DENIED
    assert isinstance(outcome.error, PathViolation)
    assert "is not an existing directory" in outcome.feedback
    assert runner.calls == []
    assert audit.records() == ()
    assert [entry.status for entry in history] == ["denied"]


def test_write_failure_is_a_failed_outcome(project: Path) -> None:
    pipeline, audit, history = _pipeline(project, policy=PermissionPolicy(auto_apply_patches=True))
    raw = {
        **README_PATCH,
        "content": {
            "file": "README.md/child.txt",
            "diff": "--- /dev/null\n+++ b/README.md/child.txt\n@@ -0,0 +1 @@\n+hi\n",
            "summary": "nest a file under a file",
        },
    }

    outcome = pipeline.handle(raw)

    assert outcome.status is OutcomeStatus.FAILED
    assert isinstance(outcome.error, PatchConflict)
    assert "cannot write target" in outcome.feedback
    assert audit.records() == ()
    assert [entry.status for entry in history] == ["failed"]


def test_audit_log_patch_is_denied(project: Path) -> None:
    pipeline, audit, _ = _pipeline(project, policy=PermissionPolicy(auto_apply_patches=True))
    raw = {
        **README_PATCH,
        "content": {
            "file": ".team_workspace/audit.log",
            "diff": "--- /dev/null\n+++ b/.team_workspace/audit.log\n@@ -0,0 +1 @@\n+forged\n",
            "summary": "forge the audit trail",
        },
    }

    outcome = pipeline.handle(raw)

    assert outcome.status is OutcomeStatus.DENIED
    assert "protected workspace file" in outcome.feedback
    assert not (project / ".team_workspace").exists()
    assert audit.records() == ()


def test_plan_and_text_are_recorded_only(project: Path) -> None:
    runner = StubRunner()
    pipeline, audit, history = _pipeline(project, runner=runner)

    outcome = pipeline.handle({"role": "reviewer", "kind": "text", "content": {"text": "LGTM"}})

    assert outcome.status is OutcomeStatus.RECORDED
    assert outcome.ok
    assert outcome.feedback == "text recorded"
    assert runner.calls == []
    assert audit.records() == ()
    assert history.entries()[0].summary == "LGTM"
