"""Command-line interface router for team-workspace."""

from __future__ import annotations

import argparse
import json
import sys
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from team_workspace.config import (
    ConfigLoadError,
    ConfigValidationError,
    load_config,
    policy_from_config,
    redact_config,
    resolve_config_source,
)
from team_workspace.domain.messages import AgentMessage, CommandMessage, PatchMessage
from team_workspace.errors import SchemaViolation
from team_workspace.executor import CommandResult, Executor, FileAuditLog, PatchResult
from team_workspace.gate import (
    ApprovalGrant,
    GateDecision,
    PermissionPolicy,
    decide,
    grant_approval,
    load_message,
    parse_record,
)
from team_workspace.observability import correlation_scope, setup_logging
from team_workspace.pipeline import MessagePipeline, OutcomeStatus, PipelineOutcome
from team_workspace.session import SessionHistory
from team_workspace.ui.render import CLIRenderer, create_renderer


@dataclass
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code.

    Not frozen: ``contextlib`` assigns ``__traceback__`` while unwinding.
    """

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="teamws",
        description=(
            "team-workspace — validate, gate and execute agent messages.\n\n"
            "Common workflows:\n"
            "  teamws validate msg.json     Check a message against the schema\n"
            "  teamws gate msg.yaml         Show what the permission gate decides\n"
            "  teamws apply msg.json        Execute a patch or command after approval\n"
            "  teamws audit                 Show the audit trail\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--project-root",
        default=".",
        help="Project root directory (default: current working directory).",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to workspace TOML config (default: <project-root>/workspace.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    message_args = argparse.ArgumentParser(add_help=False)
    message_args.add_argument("message", help="Message file (JSON or YAML), or '-' for stdin.")
    message_args.add_argument(
        "--format",
        dest="message_format",
        choices=("auto", "json", "yaml"),
        default=None,
        help="Message format (default: from file extension, else auto-detect).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser(
        "validate",
        parents=[common, message_args],
        help="Validate a message record",
        description=(
            "Validate a raw message and list every violated constraint.\n\n"
            "Examples:\n"
            "  teamws validate plan.yaml\n"
            "  cat msg.json | teamws validate -\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    validate_parser.set_defaults(handler=_cmd_validate)

    gate_parser = subparsers.add_parser(
        "gate",
        parents=[common, message_args],
        help="Show the gate decision for a message",
        description="Validate a message and print the permission gate verdict without executing it.",
    )
    gate_parser.set_defaults(handler=_cmd_gate)

    apply_parser = subparsers.add_parser(
        "apply",
        parents=[common, message_args],
        help="Validate, gate and execute a message",
        description=(
            "Run one message through the full pipeline. Messages that need approval\n"
            "prompt interactively unless --yes is given.\n\n"
            "Examples:\n"
            "  teamws apply fix.json --yes\n"
            "  teamws apply cmd.yaml --cwd src\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    apply_parser.add_argument(
        "--yes", "-y", action="store_true", help="Approve without prompting."
    )
    apply_parser.add_argument(
        "--cwd", default=None, help="Working directory for commands, relative to the project root."
    )
    apply_parser.set_defaults(handler=_cmd_apply)

    audit_parser = subparsers.add_parser(
        "audit",
        parents=[common],
        help="Show the audit trail",
        description="List executor audit records, oldest first.",
    )
    audit_parser.add_argument(
        "--limit", type=int, default=None, help="Only show the most recent N records."
    )
    audit_parser.set_defaults(handler=_cmd_audit)

    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration (redacted)",
        description=(
            "Display the effective config after merging defaults, file, env, and profile.\n\n"
            "Examples:\n"
            "  teamws config\n"
            "  teamws config --profile locked --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        with correlation_scope(session_id=uuid.uuid4().hex[:12]):
            result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_validate(args: argparse.Namespace) -> int:
    _load_effective_config(args)
    try:
        message = _load_message(args)
    except SchemaViolation as exc:
        return _report_schema_violation(args, exc)

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "validate",
                "valid": True,
                "kind": message.kind.value,
                "fingerprint": message.fingerprint(),
                "message": message.to_dict(),
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.status("Status", "valid")
    renderer.kv("Kind", message.kind.value)
    renderer.kv("Summary", message.summary())
    renderer.kv("Fingerprint", message.fingerprint())
    return 0


def _cmd_gate(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    policy = _policy(config)
    try:
        message = _load_message(args)
    except SchemaViolation as exc:
        return _report_schema_violation(args, exc)

    decision = decide(message, policy)
    if _flag(args, "json"):
        _emit_json({"command": "gate", "decision": decision.to_dict()})
    else:
        _render_decision(_get_renderer(args), decision)
    return 1 if decision.is_denied else 0


def _cmd_apply(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    root = _project_root(args)
    try:
        raw = _read_record(args)
    except SchemaViolation as exc:
        return _report_schema_violation(args, exc)

    history_path = _history_path(config)
    executor = _build_executor(config, root, args, history_path)
    history = SessionHistory.load(history_path) if history_path is not None else None
    approver = _auto_approver if _flag(args, "yes") else _prompt_approver
    pipeline = MessagePipeline(executor, history=history, approver=approver)

    outcome = pipeline.handle(raw, cwd=getattr(args, "cwd", None))
    if history is not None and history_path is not None:
        history.save(history_path)

    if _flag(args, "json"):
        _emit_json(_outcome_payload(outcome))
    else:
        _render_outcome(_get_renderer(args), outcome)
    return 0 if outcome.ok else 1


def _cmd_audit(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    store = FileAuditLog(_audit_log_path(config))
    try:
        records = store.records()
    except ValueError as exc:
        raise CLIError(f"audit log {store.path} is corrupt: {exc}", exit_code=4) from exc

    limit = getattr(args, "limit", None)
    if isinstance(limit, int) and limit >= 0:
        records = records[len(records) - limit :] if limit else ()

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "audit",
                "path": str(store.path),
                "records": [
                    {
                        "timestamp": record.timestamp_iso,
                        "action": record.action,
                        "detail": record.detail,
                    }
                    for record in records
                ],
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Audit log", store.path)
    if not records:
        renderer.text("(no records)")
        return 0
    for record in records:
        renderer.section(f"[{record.timestamp_iso}] {record.action}")
        for line in record.detail.splitlines():
            renderer.text(f"  {line}")
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))
    redacted = redact_config(config)

    if _flag(args, "json"):
        _emit_json({"command": "config", "active_profile": profile, "config": redacted})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------


def _auto_approver(message: AgentMessage, decision: GateDecision) -> ApprovalGrant | None:
    return grant_approval(decision, approver="cli --yes")


def _prompt_approver(message: AgentMessage, decision: GateDecision) -> ApprovalGrant | None:
    print(f"Approval required: {decision.summary}", file=sys.stderr)
    if isinstance(message, CommandMessage):
        print(f"  reason: {message.reason}", file=sys.stderr)
    elif isinstance(message, PatchMessage):
        print(message.diff.rstrip("\n"), file=sys.stderr)
    sys.stderr.write("Approve? [y/N] ")
    sys.stderr.flush()
    answer = sys.stdin.readline()
    if answer.strip().lower() not in {"y", "yes"}:
        return None
    return grant_approval(decision, approver="cli")


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"))


def _report_schema_violation(args: argparse.Namespace, exc: SchemaViolation) -> int:
    issues = [issue.render() for issue in exc.issues]
    if _flag(args, "json"):
        _emit_json(
            {
                "command": getattr(args, "command", None),
                "valid": False,
                "issues": [{"path": item.path, "message": item.message} for item in exc.issues],
            }
        )
        return 1
    renderer = _get_renderer(args)
    renderer.status("Status", "rejected")
    renderer.section("Issues:")
    renderer.items(issues)
    return 1


def _render_decision(renderer: CLIRenderer, decision: GateDecision) -> None:
    renderer.kv("Kind", decision.kind.value)
    renderer.kv("Summary", decision.summary)
    renderer.status("Verdict", decision.verdict.value)
    renderer.kv("Reasons", ", ".join(decision.reason_codes))


def _render_outcome(renderer: CLIRenderer, outcome: PipelineOutcome) -> None:
    renderer.status("Status", outcome.status.value)
    if outcome.decision is not None:
        renderer.status("Verdict", outcome.decision.verdict.value)
    if outcome.status is OutcomeStatus.REJECTED:
        renderer.text(outcome.feedback)
        return
    renderer.kv("Feedback", outcome.feedback)
    result = outcome.result
    if isinstance(result, CommandResult):
        renderer.kv("Exit code", "timeout" if result.timed_out else result.exit_code)
        renderer.block("stdout:", result.stdout)
        renderer.block("stderr:", result.stderr)
    elif isinstance(result, PatchResult):
        renderer.kv("File", result.target)
        renderer.kv("Hunks", result.hunks)


def _outcome_payload(outcome: PipelineOutcome) -> dict[str, object]:
    payload: dict[str, object] = {
        "command": "apply",
        "status": outcome.status.value,
        "feedback": outcome.feedback,
        "decision": outcome.decision.to_dict() if outcome.decision is not None else None,
        "result": outcome.result.to_dict() if outcome.result is not None else None,
        "error": str(outcome.error) if outcome.error is not None else None,
    }
    return payload


# ---------------------------------------------------------------------------
# Helpers — config, paths, messages
# ---------------------------------------------------------------------------


def _project_root(args: argparse.Namespace) -> Path:
    raw = _optional_str(getattr(args, "project_root", None)) or "."
    candidate = Path(raw).expanduser().resolve()
    if not candidate.is_dir():
        raise CLIError(f"project root is not a directory: {candidate}", exit_code=2)
    return candidate


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))

    try:
        config = load_config(config_path, project_root=_project_root(args), profile=profile)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    observability = config.get("observability")
    setup_logging(observability if isinstance(observability, Mapping) else None)
    return config


def _policy(config: Mapping[str, object]) -> PermissionPolicy:
    try:
        return policy_from_config(config)
    except ConfigValidationError as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _build_executor(
    config: Mapping[str, Any],
    root: Path,
    args: argparse.Namespace,
    history_path: Path | None,
) -> Executor:
    executor_cfg = config.get("executor", {})
    source = resolve_config_source(
        _optional_str(getattr(args, "config_path", None)), project_root=root
    )
    protected = [source.path]
    if history_path is not None:
        protected.append(history_path)
    return Executor(
        root,
        policy=_policy(config),
        audit=FileAuditLog(_audit_log_path(config)),
        command_timeout_seconds=executor_cfg.get("command_timeout_seconds"),
        inherit_host_env=bool(executor_cfg.get("inherit_host_env", False)),
        protected_paths=protected,
    )


def _audit_log_path(config: Mapping[str, Any]) -> Path:
    raw = config.get("executor", {}).get("audit_log")
    if not isinstance(raw, str):
        raise CLIError("executor.audit_log is not configured", exit_code=2)
    return Path(raw)


def _history_path(config: Mapping[str, Any]) -> Path | None:
    raw = config.get("session", {}).get("history_file")
    return Path(raw) if isinstance(raw, str) else None


def _read_record(args: argparse.Namespace) -> object:
    text, fmt = _read_message_text(args)
    return parse_record(text, fmt=fmt)


def _load_message(args: argparse.Namespace) -> AgentMessage:
    text, fmt = _read_message_text(args)
    return load_message(text, fmt=fmt)


def _read_message_text(args: argparse.Namespace) -> tuple[str, str]:
    source = _optional_str(getattr(args, "message", None))
    if source is None:
        raise CLIError("a message file or '-' is required", exit_code=2)
    explicit = _optional_str(getattr(args, "message_format", None))

    if source == "-":
        return sys.stdin.read(), explicit or "auto"

    path = Path(source).expanduser()
    if not path.is_file():
        raise CLIError(f"message file not found: {path}", exit_code=2)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise CLIError(f"unable to read message file {path}: {exc}", exit_code=2) from exc

    if explicit is not None:
        return text, explicit
    suffix = path.suffix.lower()
    if suffix == ".json":
        return text, "json"
    if suffix in {".yaml", ".yml"}:
        return text, "yaml"
    return text, "auto"


def _optional_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "run_cli"]
