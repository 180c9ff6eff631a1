"""Append-only audit trail for executor actions.

Stores are owned by the caller and handed to the executor explicitly; there is
no module-level audit log. The file format is one entry per action::

    [2026-01-01T12:00:00.000000Z] COMMAND_EXECUTED
    command: pip install pandas
    risk: low

"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, Protocol

from team_workspace.utils.fs import append_text

_ACTION_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Z][A-Z0-9_]*$")
_HEADER_RE: Final[re.Pattern[str]] = re.compile(
    r"^\[(?P<timestamp>[^\]]+)\] (?P<action>[A-Z][A-Z0-9_]*)$"
)


@dataclass(frozen=True, slots=True)
class AuditRecord:
    """Immutable proof that an executor action occurred."""

    action: str
    detail: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def __post_init__(self) -> None:
        if not _ACTION_RE.fullmatch(self.action):
            raise ValueError(f"audit action must be an upper-case tag, got {self.action!r}")
        if self.timestamp.tzinfo is None or self.timestamp.utcoffset() is None:
            raise ValueError("audit timestamp must be timezone-aware")
        object.__setattr__(self, "timestamp", self.timestamp.astimezone(UTC))
        # Blank lines separate entries on disk.
        object.__setattr__(self, "detail", _collapse_blank_lines(self.detail))

    @property
    def timestamp_iso(self) -> str:
        return self.timestamp.isoformat(timespec="microseconds").replace("+00:00", "Z")

    def render(self) -> str:
        return f"[{self.timestamp_iso}] {self.action}\n{self.detail}\n\n"


class AuditStore(Protocol):
    def append(self, record: AuditRecord) -> None: ...

    def records(self) -> tuple[AuditRecord, ...]: ...


class MemoryAuditLog:
    """In-memory store; convenient for tests and embedding callers."""

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)

    def records(self) -> tuple[AuditRecord, ...]:
        with self._lock:
            return tuple(self._records)

    def __len__(self) -> int:
        return len(self.records())


class FileAuditLog:
    """Append-only text file store."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            append_text(self._path, record.render())

    def records(self) -> tuple[AuditRecord, ...]:
        if not self._path.exists():
            return ()
        with self._path.open("r", encoding="utf-8", newline="") as handle:
            return parse_audit_log(handle.read())

    def __len__(self) -> int:
        return len(self.records())


def parse_audit_log(text: str) -> tuple[AuditRecord, ...]:
    """Parse rendered entries back into records; malformed headers raise ``ValueError``."""

    records: list[AuditRecord] = []
    header: re.Match[str] | None = None
    detail: list[str] = []
    previous_blank = True

    for line_number, line in enumerate(text.split("\n"), start=1):
        match = _HEADER_RE.match(line) if previous_blank else None
        if match is not None:
            if header is not None:
                records.append(_record_from(header, detail))
            header = match
            detail = []
        elif header is None:
            if line.strip():
                raise ValueError(f"audit log line {line_number}: expected entry header")
        else:
            detail.append(line)
        previous_blank = not line.strip()

    if header is not None:
        records.append(_record_from(header, detail))
    return tuple(records)


def _record_from(header: re.Match[str], detail_lines: list[str]) -> AuditRecord:
    raw_timestamp = header.group("timestamp")
    text = raw_timestamp[:-1] + "+00:00" if raw_timestamp.endswith("Z") else raw_timestamp
    try:
        timestamp = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"invalid audit timestamp {raw_timestamp!r}") from exc
    while detail_lines and not detail_lines[-1].strip():
        detail_lines = detail_lines[:-1]
    return AuditRecord(
        action=header.group("action"),
        detail="\n".join(detail_lines),
        timestamp=timestamp,
    )


def _collapse_blank_lines(detail: str) -> str:
    if not detail.strip():
        return ""
    lines = [line.rstrip("\r") for line in detail.strip("\n").split("\n")]
    return "\n".join(line if line.strip() else "." for line in lines)


__all__ = [
    "AuditRecord",
    "AuditStore",
    "FileAuditLog",
    "MemoryAuditLog",
    "parse_audit_log",
]
