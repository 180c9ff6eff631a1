"""Permission policy record consulted by the approval gate and the executor."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from team_workspace.errors import SchemaIssue


class PolicyConfigError(ValueError):
    """Raised when a policy mapping has the wrong shape."""

    def __init__(self, issues: Sequence[SchemaIssue]) -> None:
        self.issues = tuple(issues)
        rendered = "\n".join(f"- {item.render()}" for item in self.issues)
        super().__init__(f"invalid permission policy:\n{rendered}")


@dataclass(frozen=True, slots=True)
class PermissionPolicy:
    """What the gate may let through.

    An empty ``allowed_command_prefixes`` means no prefix restriction; a
    non-empty tuple switches on the stricter allow-list behaviour.
    """

    allow_commands: bool = True
    allow_high_risk: bool = False
    allowed_command_prefixes: tuple[str, ...] = ()
    allow_patches: bool = True
    auto_apply_patches: bool = False

    def __post_init__(self) -> None:
        normalized = tuple(
            normalize_command_text(item) for item in self.allowed_command_prefixes
        )
        if any(not item for item in normalized):
            raise PolicyConfigError(
                (SchemaIssue("allowed_command_prefixes", "prefixes must be non-empty strings"),)
            )
        object.__setattr__(self, "allowed_command_prefixes", normalized)

    @property
    def restricts_prefixes(self) -> bool:
        return bool(self.allowed_command_prefixes)

    def matching_prefix(self, command: str) -> str | None:
        """Return the first allow-listed prefix ``command`` starts with, on a word boundary."""

        normalized = normalize_command_text(command)
        for prefix in self.allowed_command_prefixes:
            if normalized == prefix or normalized.startswith(prefix + " "):
                return prefix
        return None

    def to_dict(self) -> dict[str, object]:
        return {
            "allow_commands": self.allow_commands,
            "allow_high_risk": self.allow_high_risk,
            "allowed_command_prefixes": list(self.allowed_command_prefixes),
            "allow_patches": self.allow_patches,
            "auto_apply_patches": self.auto_apply_patches,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> PermissionPolicy:
        issues: list[SchemaIssue] = []
        allowed = {
            "allow_commands",
            "allow_high_risk",
            "allowed_command_prefixes",
            "allow_patches",
            "auto_apply_patches",
        }
        for key in sorted(data):
            if key not in allowed:
                issues.append(SchemaIssue(key, "unexpected field"))

        flags: dict[str, bool] = {}
        for key in sorted(allowed - {"allowed_command_prefixes"}):
            if key not in data:
                continue
            value = data[key]
            if not isinstance(value, bool):
                issues.append(SchemaIssue(key, f"expected boolean, got {type(value).__name__}"))
                continue
            flags[key] = value

        prefixes: tuple[str, ...] = ()
        raw_prefixes = data.get("allowed_command_prefixes", ())
        if not isinstance(raw_prefixes, (list, tuple)):
            issues.append(
                SchemaIssue(
                    "allowed_command_prefixes",
                    f"expected array, got {type(raw_prefixes).__name__}",
                )
            )
        else:
            collected: list[str] = []
            for index, item in enumerate(raw_prefixes):
                if not isinstance(item, str) or not item.strip():
                    issues.append(
                        SchemaIssue(
                            f"allowed_command_prefixes[{index}]", "expected non-empty string"
                        )
                    )
                    continue
                collected.append(item)
            prefixes = tuple(collected)

        if issues:
            raise PolicyConfigError(issues)
        return cls(allowed_command_prefixes=prefixes, **flags)


def normalize_command_text(command: str) -> str:
    """Collapse runs of whitespace so prefix checks cannot be dodged with spacing."""

    return " ".join(command.split())


__all__ = ["PermissionPolicy", "PolicyConfigError", "normalize_command_text"]
