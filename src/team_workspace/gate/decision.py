"""
Permission / approval gate.

Decides, for a validated message and the active policy, whether execution may
proceed automatically, must wait for an explicit human approval, or is refused:

- commands never proceed automatically; they are denied when execution is
  disabled, when they are high risk and high risk is not allowed, or when an
  allow-list is configured and no prefix matches
- patches are denied when disabled or when the target is lexically absolute or
  traversing, and auto-applied only when the policy says so
- plans and text have no side effects and are always allowed

The gate is a pure function. Approvals are recorded as ``ApprovalGrant``
values bound to the message fingerprint, so a grant for one message can never
authorise another.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import PurePosixPath, PureWindowsPath
from typing import Final

from team_workspace.domain.messages import (
    AgentMessage,
    CommandMessage,
    MessageKind,
    PatchMessage,
    RiskLevel,
)
from team_workspace.errors import PolicyDenied
from team_workspace.gate.policy import PermissionPolicy

_WINDOWS_ABSOLUTE_PATH_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z]:[\\/]")

REASON_COMMANDS_DISABLED: Final[str] = "commands_disabled"
REASON_HIGH_RISK_DISABLED: Final[str] = "high_risk_disabled"
REASON_PREFIX_NOT_ALLOWED: Final[str] = "prefix_not_allowed"
REASON_PATCHES_DISABLED: Final[str] = "patches_disabled"
REASON_ABSOLUTE_TARGET: Final[str] = "absolute_target"
REASON_PATH_TRAVERSAL: Final[str] = "path_traversal"
REASON_APPROVAL_REQUIRED: Final[str] = "approval_required"
REASON_AUTO_APPLY: Final[str] = "auto_apply_patches"
REASON_NO_SIDE_EFFECTS: Final[str] = "no_side_effects"


class GateVerdict(StrEnum):
    ALLOW = "allow"
    REQUIRE_APPROVAL = "require_approval"
    DENY = "deny"


@dataclass(frozen=True, slots=True)
class GateDecision:
    """Gate outcome for one message under one policy."""

    verdict: GateVerdict
    kind: MessageKind
    fingerprint: str
    reason_codes: tuple[str, ...]
    summary: str

    @property
    def is_denied(self) -> bool:
        return self.verdict is GateVerdict.DENY

    @property
    def needs_approval(self) -> bool:
        return self.verdict is GateVerdict.REQUIRE_APPROVAL

    def to_dict(self) -> dict[str, object]:
        return {
            "verdict": self.verdict.value,
            "kind": self.kind.value,
            "fingerprint": self.fingerprint,
            "reason_codes": list(self.reason_codes),
            "summary": self.summary,
        }


@dataclass(frozen=True, slots=True)
class ApprovalGrant:
    """An explicit human approval for exactly one message."""

    fingerprint: str
    approver: str
    granted_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def covers(self, message: AgentMessage) -> bool:
        return self.fingerprint == message.fingerprint()


def decide(message: AgentMessage, policy: PermissionPolicy) -> GateDecision:
    """Return the gate decision for ``message`` under ``policy``."""

    if isinstance(message, CommandMessage):
        verdict, reasons = _decide_command(message, policy)
    elif isinstance(message, PatchMessage):
        verdict, reasons = _decide_patch(message, policy)
    else:
        verdict, reasons = GateVerdict.ALLOW, (REASON_NO_SIDE_EFFECTS,)

    return GateDecision(
        verdict=verdict,
        kind=message.kind,
        fingerprint=message.fingerprint(),
        reason_codes=reasons,
        summary=message.summary(),
    )


def grant_approval(decision: GateDecision, *, approver: str = "user") -> ApprovalGrant:
    """Record an explicit approval for ``decision``; denied decisions cannot be approved."""

    if decision.is_denied:
        raise PolicyDenied(decision.reason_codes, "denied decisions cannot be approved")
    name = approver.strip()
    if not name:
        raise ValueError("approver must not be empty")
    return ApprovalGrant(fingerprint=decision.fingerprint, approver=name)


def _decide_command(
    message: CommandMessage, policy: PermissionPolicy
) -> tuple[GateVerdict, tuple[str, ...]]:
    reasons: list[str] = []
    if not policy.allow_commands:
        reasons.append(REASON_COMMANDS_DISABLED)
    if message.risk is RiskLevel.HIGH and not policy.allow_high_risk:
        reasons.append(REASON_HIGH_RISK_DISABLED)
    if policy.restricts_prefixes and policy.matching_prefix(message.command) is None:
        reasons.append(REASON_PREFIX_NOT_ALLOWED)

    if reasons:
        return GateVerdict.DENY, tuple(reasons)
    return GateVerdict.REQUIRE_APPROVAL, (REASON_APPROVAL_REQUIRED,)


def _decide_patch(
    message: PatchMessage, policy: PermissionPolicy
) -> tuple[GateVerdict, tuple[str, ...]]:
    reasons: list[str] = []
    if not policy.allow_patches:
        reasons.append(REASON_PATCHES_DISABLED)
    if _is_absolute(message.file):
        reasons.append(REASON_ABSOLUTE_TARGET)
    if _has_traversal(message.file):
        reasons.append(REASON_PATH_TRAVERSAL)

    if reasons:
        return GateVerdict.DENY, tuple(reasons)
    if policy.auto_apply_patches:
        return GateVerdict.ALLOW, (REASON_AUTO_APPLY,)
    return GateVerdict.REQUIRE_APPROVAL, (REASON_APPROVAL_REQUIRED,)


def _is_absolute(target: str) -> bool:
    return (
        PurePosixPath(target).is_absolute()
        or PureWindowsPath(target).is_absolute()
        or bool(_WINDOWS_ABSOLUTE_PATH_RE.match(target))
    )


def _has_traversal(target: str) -> bool:
    return ".." in PurePosixPath(target.replace("\\", "/")).parts


__all__ = [
    "REASON_ABSOLUTE_TARGET",
    "REASON_APPROVAL_REQUIRED",
    "REASON_AUTO_APPLY",
    "REASON_COMMANDS_DISABLED",
    "REASON_HIGH_RISK_DISABLED",
    "REASON_NO_SIDE_EFFECTS",
    "REASON_PATCHES_DISABLED",
    "REASON_PATH_TRAVERSAL",
    "REASON_PREFIX_NOT_ALLOWED",
    "ApprovalGrant",
    "GateDecision",
    "GateVerdict",
    "decide",
    "grant_approval",
]
