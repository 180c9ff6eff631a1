"""
team-workspace — unit tests for the executor

What this test file should cover
- Approved commands run once, without a shell, with a scrubbed environment.
- Patch targets outside the project root are refused before anything is read or written.
- Policy and approvals are re-checked by the executor itself.
- Exactly one audit record per completed action and none for refused ones.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from team_workspace.constants import AUDIT_COMMAND_EXECUTED, AUDIT_PATCH_APPLIED
from team_workspace.domain.messages import CommandMessage, PatchMessage, RiskLevel, Role
from team_workspace.errors import ExecutionFailure, PatchConflict, PathViolation, PolicyDenied
from team_workspace.executor.audit import FileAuditLog, MemoryAuditLog
from team_workspace.executor.executor import (
    Executor,
    PatchAction,
    ProcessOutput,
    SubprocessCommandRunner,
)
from team_workspace.gate.decision import ApprovalGrant, decide, grant_approval
from team_workspace.gate.policy import PermissionPolicy
from team_workspace.utils.hashing import sha256_file

README_DIFF = "--- a/README.md\n+++ b/README.md\n@@ -1 +1 @@\n-# Demo\n+# Demo project\n"


@dataclass
class RecordingRunner:
    output: ProcessOutput = field(default_factory=lambda: ProcessOutput(0, "ok\n", ""))
    calls: list[dict[str, object]] = field(default_factory=list)

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout_seconds: float | None,
    ) -> ProcessOutput:
        self.calls.append(
            {"argv": tuple(argv), "cwd": cwd, "env": dict(env), "timeout": timeout_seconds}
        )
        return self.output


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    (root / "README.md").write_text("# Demo\n", encoding="utf-8")
    (root / "src").mkdir()
    return root


def _executor(
    root: Path,
    *,
    policy: PermissionPolicy | None = None,
    runner: RecordingRunner | None = None,
    **kwargs: object,
) -> tuple[Executor, MemoryAuditLog]:
    audit = MemoryAuditLog()
    executor = Executor(
        root,
        policy=policy or PermissionPolicy(),
        audit=audit,
        runner=runner or RecordingRunner(),
        **kwargs,  # type: ignore[arg-type]
    )
    return executor, audit


def _command(text: str = "pip install pandas", risk: RiskLevel = RiskLevel.LOW) -> CommandMessage:
    return CommandMessage(command=text, reason="needed for analysis", risk=risk, role=Role.ENGINEER)


def _patch(target: str = "README.md", diff: str = README_DIFF) -> PatchMessage:
    return PatchMessage(file=target, diff=diff, summary_text="expand title", role=Role.ENGINEER)


def _approve(
    message: CommandMessage | PatchMessage, policy: PermissionPolicy, who: str = "alice"
) -> ApprovalGrant:
    return grant_approval(decide(message, policy), approver=who)


def test_approved_command_runs_once_and_is_audited(
    project: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("SECRET_API_TOKEN", "hunter2")
    runner = RecordingRunner()
    policy = PermissionPolicy()
    executor, audit = _executor(project, policy=policy, runner=runner)
    message = _command()

    result = executor.run_command(message, approval=_approve(message, policy))

    assert result.succeeded
    assert result.stdout == "ok\n"
    assert result.argv == ("pip", "install", "pandas")
    assert len(runner.calls) == 1
    call = runner.calls[0]
    assert call["argv"] == ("pip", "install", "pandas")
    assert call["cwd"] == project.resolve()
    assert call["timeout"] is None
    assert "SECRET_API_TOKEN" not in call["env"]

    (record,) = audit.records()
    assert record.action == AUDIT_COMMAND_EXECUTED
    assert record.detail.splitlines() == [
        "command: pip install pandas",
        "risk: low",
        "cwd: .",
        "exit_code: 0",
        "approved_by: alice",
    ]


def test_command_without_approval_is_refused(project: Path) -> None:
    runner = RecordingRunner()
    executor, audit = _executor(project, runner=runner)

    with pytest.raises(PolicyDenied) as excinfo:
        executor.run_command(_command())

    assert excinfo.value.reason_codes == ("approval_required",)
    assert runner.calls == []
    assert audit.records() == ()


def test_approval_for_a_different_message_is_refused(project: Path) -> None:
    policy = PermissionPolicy()
    executor, audit = _executor(project, policy=policy)
    grant = _approve(_command("pip install numpy"), policy)

    with pytest.raises(PolicyDenied) as excinfo:
        executor.run_command(_command(), approval=grant)

    assert excinfo.value.reason_codes == ("approval_mismatch",)
    assert audit.records() == ()


def test_high_risk_command_is_denied_even_with_a_grant(project: Path) -> None:
    runner = RecordingRunner()
    lenient = PermissionPolicy(allow_high_risk=True)
    message = _command("rm -rf build", RiskLevel.HIGH)
    grant = _approve(message, lenient)
    executor, audit = _executor(project, policy=PermissionPolicy(), runner=runner)

    with pytest.raises(PolicyDenied) as excinfo:
        executor.run_command(message, approval=grant)

    assert excinfo.value.reason_codes == ("high_risk_disabled",)
    assert runner.calls == []
    assert audit.records() == ()


def test_non_zero_exit_is_data_not_an_error(project: Path) -> None:
    runner = RecordingRunner(output=ProcessOutput(1, "", "boom\n"))
    policy = PermissionPolicy()
    executor, audit = _executor(project, policy=policy, runner=runner)
    message = _command("pytest -q")

    result = executor.run_command(message, approval=_approve(message, policy))

    assert not result.succeeded
    assert result.exit_code == 1
    assert result.stderr == "boom\n"
    assert "exit_code: 1" in audit.records()[0].detail
    with pytest.raises(ExecutionFailure, match="exited with 1"):
        result.raise_for_status()


def test_timeout_is_passed_through_and_recorded(project: Path) -> None:
    runner = RecordingRunner(output=ProcessOutput(None, "", "", timed_out=True))
    policy = PermissionPolicy()
    executor, audit = _executor(
        project, policy=policy, runner=runner, command_timeout_seconds=2.5
    )
    message = _command("pytest -q")

    result = executor.run_command(message, approval=_approve(message, policy))

    assert result.timed_out
    assert runner.calls[0]["timeout"] == 2.5
    assert "exit_code: timeout" in audit.records()[0].detail
    with pytest.raises(ExecutionFailure, match="timed out"):
        result.raise_for_status()


def test_command_cwd_must_stay_inside_the_root(project: Path) -> None:
    runner = RecordingRunner()
    policy = PermissionPolicy()
    executor, audit = _executor(project, policy=policy, runner=runner)
    message = _command("pytest -q")
    grant = _approve(message, policy)

    executor.run_command(message, approval=grant, cwd="src")
    with pytest.raises(PathViolation):
        executor.run_command(message, approval=grant, cwd="..")

    assert runner.calls[0]["cwd"] == (project / "src").resolve()
    assert "cwd: src" in audit.records()[0].detail
    assert len(audit.records()) == 1


@pytest.mark.parametrize("cwd", ["does-not-exist", "README.md"])
def test_command_cwd_must_be_an_existing_directory(project: Path, cwd: str) -> None:
    runner = RecordingRunner()
    policy = PermissionPolicy()
    executor, audit = _executor(project, policy=policy, runner=runner)
    message = _command("ls -la")

    with pytest.raises(PathViolation, match="is not an existing directory"):
        executor.run_command(message, approval=_approve(message, policy), cwd=cwd)

    assert runner.calls == []
    assert audit.records() == ()


def test_env_overrides_are_applied(project: Path) -> None:
    runner = RecordingRunner()
    policy = PermissionPolicy()
    executor, _ = _executor(
        project, policy=policy, runner=runner, env_overrides={"PIP_NO_INPUT": "1"}
    )
    message = _command()

    executor.run_command(message, approval=_approve(message, policy))

    assert runner.calls[0]["env"]["PIP_NO_INPUT"] == "1"


def test_non_positive_timeout_is_rejected(project: Path) -> None:
    with pytest.raises(ValueError, match="command_timeout_seconds"):
        _executor(project, command_timeout_seconds=0)


def test_approved_patch_is_applied_and_audited(project: Path) -> None:
    policy = PermissionPolicy()
    executor, audit = _executor(project, policy=policy)
    message = _patch()
    before = sha256_file(project / "README.md")

    result = executor.apply_patch(message, approval=_approve(message, policy, "bob"))

    assert (project / "README.md").read_text(encoding="utf-8") == "# Demo project\n"
    assert result.action is PatchAction.MODIFIED
    assert result.sha256_before == before
    assert result.sha256_after == sha256_file(project / "README.md")
    (record,) = audit.records()
    assert record.action == AUDIT_PATCH_APPLIED
    assert "file: README.md" in record.detail.splitlines()
    assert "approved_by: bob" in record.detail.splitlines()


def test_auto_applied_patch_is_attributed_to_policy(project: Path) -> None:
    executor, audit = _executor(project, policy=PermissionPolicy(auto_apply_patches=True))

    executor.apply_patch(_patch())

    assert "approved_by: policy" in audit.records()[0].detail.splitlines()


def test_traversal_target_is_refused_and_outside_file_untouched(project: Path) -> None:
    outside = project.parent / "passwd"
    outside.write_text("root:x:0:0\n", encoding="utf-8")
    before = sha256_file(outside)
    executor, audit = _executor(project, policy=PermissionPolicy(auto_apply_patches=True))
    diff = "--- a/passwd\n+++ b/passwd\n@@ -1 +1 @@\n-root:x:0:0\n+owned\n"

    with pytest.raises(PathViolation):
        executor.apply_patch(_patch("../passwd", diff))
    with pytest.raises(PathViolation):
        executor.apply_patch(_patch("../../etc/passwd", diff))

    assert sha256_file(outside) == before
    assert audit.records() == ()


def test_absolute_target_outside_root_is_refused(project: Path) -> None:
    executor, _ = _executor(project, policy=PermissionPolicy(auto_apply_patches=True))

    with pytest.raises(PathViolation):
        executor.apply_patch(_patch(str(project.parent / "elsewhere.txt")))


@pytest.mark.skipif(sys.platform == "win32", reason="symlinks need privileges on Windows")
def test_symlink_escape_is_refused(project: Path) -> None:
    outside = project.parent / "outside"
    outside.mkdir()
    os.symlink(outside, project / "link")
    executor, _ = _executor(project, policy=PermissionPolicy(auto_apply_patches=True))
    diff = "--- /dev/null\n+++ b/link/new.txt\n@@ -0,0 +1 @@\n+hi\n"

    with pytest.raises(PathViolation):
        executor.apply_patch(_patch("link/new.txt", diff))

    assert not (outside / "new.txt").exists()


def test_patch_targeting_the_root_itself_is_refused(project: Path) -> None:
    executor, _ = _executor(project, policy=PermissionPolicy(auto_apply_patches=True))

    with pytest.raises(PathViolation):
        executor.apply_patch(_patch("."))


def test_applying_the_same_patch_twice_conflicts(project: Path) -> None:
    executor, audit = _executor(project, policy=PermissionPolicy(auto_apply_patches=True))

    executor.apply_patch(_patch())
    with pytest.raises(PatchConflict):
        executor.apply_patch(_patch())

    assert (project / "README.md").read_text(encoding="utf-8") == "# Demo project\n"
    assert len(audit.records()) == 1


def test_conflicting_patch_leaves_file_unchanged(project: Path) -> None:
    executor, audit = _executor(project, policy=PermissionPolicy(auto_apply_patches=True))
    diff = "--- a/README.md\n+++ b/README.md\n@@ -1 +1 @@\n-# Other\n+# Changed\n"

    with pytest.raises(PatchConflict):
        executor.apply_patch(_patch(diff=diff))

    assert (project / "README.md").read_text(encoding="utf-8") == "# Demo\n"
    assert audit.records() == ()


def test_create_and_delete_patches(project: Path) -> None:
    executor, audit = _executor(project, policy=PermissionPolicy(auto_apply_patches=True))
    create = "--- /dev/null\n+++ b/src/pkg/mod.py\n@@ -0,0 +1,2 @@\n+def f():\n+    return 1\n"
    delete = "--- a/src/pkg/mod.py\n+++ /dev/null\n@@ -1,2 +0,0 @@\n-def f():\n-    return 1\n"

    created = executor.apply_patch(_patch("src/pkg/mod.py", create))
    assert created.action is PatchAction.CREATED
    assert created.sha256_before is None
    assert (project / "src" / "pkg" / "mod.py").read_text(encoding="utf-8") == "def f():\n    return 1\n"

    deleted = executor.apply_patch(_patch("src/pkg/mod.py", delete))
    assert deleted.action is PatchAction.DELETED
    assert deleted.sha256_after is None
    assert not (project / "src" / "pkg" / "mod.py").exists()
    assert [line for r in audit.records() for line in r.detail.splitlines() if line.startswith("action:")] == [
        "action: created",
        "action: deleted",
    ]


def test_disabled_patches_are_denied(project: Path) -> None:
    executor, _ = _executor(project, policy=PermissionPolicy(allow_patches=False))

    with pytest.raises(PolicyDenied) as excinfo:
        executor.apply_patch(_patch())

    assert excinfo.value.reason_codes == ("patches_disabled",)


def test_directory_target_is_a_conflict(project: Path) -> None:
    executor, _ = _executor(project, policy=PermissionPolicy(auto_apply_patches=True))

    with pytest.raises(PatchConflict, match="not a regular file"):
        executor.apply_patch(_patch("src"))


def test_unwritable_target_is_a_conflict(project: Path) -> None:
    executor, audit = _executor(project, policy=PermissionPolicy(auto_apply_patches=True))
    diff = "--- /dev/null\n+++ b/README.md/child.txt\n@@ -0,0 +1 @@\n+hi\n"

    with pytest.raises(PatchConflict, match="cannot write target"):
        executor.apply_patch(_patch("README.md/child.txt", diff))

    assert (project / "README.md").read_text(encoding="utf-8") == "# Demo\n"
    assert audit.records() == ()


def test_audit_log_cannot_be_patched(project: Path) -> None:
    audit = FileAuditLog(project / ".team_workspace" / "audit.log")
    policy = PermissionPolicy(auto_apply_patches=True)
    executor = Executor(project, policy=policy, audit=audit, runner=RecordingRunner())
    message = _command()
    executor.run_command(message, approval=_approve(message, policy))
    erase = "--- a/.team_workspace/audit.log\n+++ /dev/null\n@@ -1 +0,0 @@\n-x\n"

    with pytest.raises(PathViolation, match="protected workspace file"):
        executor.apply_patch(_patch(".team_workspace/audit.log", erase))

    (record,) = audit.records()
    assert record.action == AUDIT_COMMAND_EXECUTED


def test_state_directory_is_protected_for_any_store(project: Path) -> None:
    executor, audit = _executor(project, policy=PermissionPolicy(auto_apply_patches=True))
    create = "--- /dev/null\n+++ b/.team_workspace/notes.txt\n@@ -0,0 +1 @@\n+hi\n"

    with pytest.raises(PathViolation):
        executor.apply_patch(_patch(".team_workspace/notes.txt", create))
    with pytest.raises(PathViolation):
        executor.apply_patch(_patch("./src/../.team_workspace", create))

    assert not (project / ".team_workspace").exists()
    assert audit.records() == ()


def test_audit_log_outside_state_directory_is_protected(project: Path) -> None:
    audit = FileAuditLog(project / "logs" / "audit.log")
    executor = Executor(
        project,
        policy=PermissionPolicy(auto_apply_patches=True),
        audit=audit,
        runner=RecordingRunner(),
    )
    create = "--- /dev/null\n+++ b/logs/audit.log\n@@ -0,0 +1 @@\n+forged\n"

    with pytest.raises(PathViolation):
        executor.apply_patch(_patch("logs/audit.log", create))

    assert (project / "logs" / "audit.log").resolve() in executor.protected_paths
    assert not (project / "logs" / "audit.log").exists()


def test_configured_protected_paths_are_refused(project: Path) -> None:
    config = project / "workspace.toml"
    config.write_text("[policy]\nallow_high_risk = false\n", encoding="utf-8")
    executor, audit = _executor(
        project,
        policy=PermissionPolicy(auto_apply_patches=True),
        protected_paths=["workspace.toml"],
    )
    escalate = (
        "--- a/workspace.toml\n+++ b/workspace.toml\n@@ -2 +2 @@\n"
        "-allow_high_risk = false\n+allow_high_risk = true\n"
    )

    with pytest.raises(PathViolation, match="protected workspace file"):
        executor.apply_patch(_patch("workspace.toml", escalate))

    assert config.read_text(encoding="utf-8") == "[policy]\nallow_high_risk = false\n"
    assert audit.records() == ()
    executor.apply_patch(_patch())
    assert len(audit.records()) == 1


def test_subprocess_runner_captures_streams(tmp_path: Path) -> None:
    runner = SubprocessCommandRunner()

    output = runner.run(
        [sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"],
        cwd=tmp_path,
        env=dict(os.environ),
        timeout_seconds=30,
    )

    assert output.exit_code == 3
    assert output.stdout.strip() == "out"
    assert output.stderr.strip() == "err"
    assert not output.timed_out


def test_subprocess_runner_reports_timeouts(tmp_path: Path) -> None:
    output = SubprocessCommandRunner().run(
        [sys.executable, "-c", "import time; time.sleep(10)"],
        cwd=tmp_path,
        env=dict(os.environ),
        timeout_seconds=0.5,
    )

    assert output.timed_out
    assert output.exit_code is None


def test_subprocess_runner_reports_missing_program(tmp_path: Path) -> None:
    output = SubprocessCommandRunner().run(
        ["definitely-not-a-real-program-xyz"],
        cwd=tmp_path,
        env=dict(os.environ),
        timeout_seconds=5,
    )

    assert output.exit_code == 127
    assert "command not found" in output.stderr
