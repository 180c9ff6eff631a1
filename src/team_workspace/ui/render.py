"""Output rendering for the ``teamws`` CLI.

Purpose
- Provide a thin rendering layer for CLI output.
- Respect NO_COLOR environment variable and --no-color CLI flag.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Sequence

_ANSI_RESET: Final[str] = "\033[0m"
_VERDICT_COLORS: Final[dict[str, str]] = {
    "allow": "\033[32m",
    "executed": "\033[32m",
    "recorded": "\033[32m",
    "require_approval": "\033[33m",
    "declined": "\033[33m",
    "deny": "\033[31m",
    "denied": "\033[31m",
    "rejected": "\033[31m",
    "failed": "\033[31m",
}


def _color_allowed(no_color_flag: bool) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


class CLIRenderer:
    """Thin CLI output renderer.

    Produces clean, deterministic plain-text output. Color is only used for
    status words and only on a TTY.
    """

    def __init__(self, *, no_color: bool = False) -> None:
        self._color = _color_allowed(no_color)

    def kv(self, key: str, value: object) -> None:
        print(f"{key}: {value}")

    def status(self, key: str, value: str) -> None:
        """Print a key: value pair whose value is a verdict or outcome status."""

        color = _VERDICT_COLORS.get(value) if self._color else None
        rendered = f"{color}{value}{_ANSI_RESET}" if color else value
        print(f"{key}: {rendered}")

    def text(self, line: str) -> None:
        print(line)

    def section(self, title: str) -> None:
        print(f"\n{title}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            print(f"  {prefix}{entry}")

    def block(self, title: str, body: str) -> None:
        """Print captured output under a section title; empty bodies are skipped."""

        if not body:
            return
        self.section(title)
        print(body.rstrip("\n"))


def create_renderer(*, no_color: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color)


__all__ = ["CLIRenderer", "create_renderer"]
