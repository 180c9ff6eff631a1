"""
team-workspace — executor

Purpose
- Perform the side effects of approved messages: apply unified diffs inside
  the project root and run commands without a shell.
- Every completed action leaves exactly one audit record.
"""

from team_workspace.executor.audit import (
    AuditRecord,
    AuditStore,
    FileAuditLog,
    MemoryAuditLog,
    parse_audit_log,
)
from team_workspace.executor.executor import (
    CommandResult,
    CommandRunner,
    Executor,
    PatchAction,
    PatchResult,
    ProcessOutput,
    SubprocessCommandRunner,
    split_command,
)
from team_workspace.executor.patching import apply_file_patch, parse_unified_diff

__all__ = [
    "AuditRecord",
    "AuditStore",
    "CommandResult",
    "CommandRunner",
    "Executor",
    "FileAuditLog",
    "MemoryAuditLog",
    "PatchAction",
    "PatchResult",
    "ProcessOutput",
    "SubprocessCommandRunner",
    "apply_file_patch",
    "parse_audit_log",
    "parse_unified_diff",
    "split_command",
]
