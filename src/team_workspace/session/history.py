"""Conversation history owned by the caller.

One ``HistoryEntry`` per handled message. Entries can be persisted as JSON
lines and loaded back; the file is rewritten atomically on ``save``.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from team_workspace.domain.messages import MessageKind, Role
from team_workspace.utils.fs import atomic_write


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """What happened to one message, in one line."""

    role: Role | None
    kind: MessageKind | None
    status: str
    summary: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def __post_init__(self) -> None:
        if not self.status:
            raise ValueError("history status must not be empty")
        if self.timestamp.tzinfo is None:
            raise ValueError("history timestamp must be timezone-aware")
        object.__setattr__(self, "timestamp", self.timestamp.astimezone(UTC))

    def to_dict(self) -> dict[str, object]:
        return {
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
            "role": self.role.value if self.role is not None else None,
            "kind": self.kind.value if self.kind is not None else None,
            "status": self.status,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> HistoryEntry:
        raw_timestamp = payload.get("timestamp")
        if not isinstance(raw_timestamp, str):
            raise ValueError("history entry is missing a timestamp")
        raw_role = payload.get("role")
        raw_kind = payload.get("kind")
        status = payload.get("status")
        summary = payload.get("summary", "")
        if not isinstance(status, str) or not isinstance(summary, str):
            raise ValueError("history entry status and summary must be strings")
        return cls(
            role=Role(raw_role) if raw_role is not None else None,
            kind=MessageKind(raw_kind) if raw_kind is not None else None,
            status=status,
            summary=summary,
            timestamp=datetime.fromisoformat(raw_timestamp.replace("Z", "+00:00")),
        )


class SessionHistory:
    """Append-only in-memory history with optional JSON-lines persistence."""

    def __init__(self, entries: tuple[HistoryEntry, ...] | list[HistoryEntry] = ()) -> None:
        self._entries: list[HistoryEntry] = list(entries)
        self._lock = threading.Lock()

    def append(self, entry: HistoryEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def entries(self) -> tuple[HistoryEntry, ...]:
        with self._lock:
            return tuple(self._entries)

    def __len__(self) -> int:
        return len(self.entries())

    def __iter__(self) -> Iterator[HistoryEntry]:
        return iter(self.entries())

    def save(self, path: Path | str) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        lines = [json.dumps(entry.to_dict(), sort_keys=True) for entry in self.entries()]
        atomic_write(target, "".join(f"{line}\n" for line in lines))
        return target

    @classmethod
    def load(cls, path: Path | str) -> SessionHistory:
        """Load a history file; a missing file yields an empty history."""

        source = Path(path)
        if not source.exists():
            return cls()
        entries: list[HistoryEntry] = []
        with source.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    payload = json.loads(line)
                    if not isinstance(payload, dict):
                        raise ValueError("expected a JSON object")
                    entries.append(HistoryEntry.from_dict(payload))
                except ValueError as exc:
                    raise ValueError(f"{source}:{line_number}: invalid history entry: {exc}") from exc
        return cls(entries)


__all__ = ["HistoryEntry", "SessionHistory"]
