"""Structured logging setup with JSON-lines or text output and redaction support.

Components emit events through ``structlog``; ``configure_structlog`` routes
them into the stdlib ``team_workspace`` logger so one formatter handles both.
"""

from __future__ import annotations

import contextvars
import json
import logging
import math
import re
import sys
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, TextIO

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

_REDACTED_VALUE: Final[str] = "***REDACTED***"
_DEFAULT_LOG_FILENAME: Final[str] = "workspace.jsonl"
_DEFAULT_LOGGER_NAME: Final[str] = "team_workspace"

_CORRELATION_KEYS: Final[tuple[str, ...]] = ("session_id", "message_id", "fingerprint")

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
    "client_secret",
)

_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_PROVIDER_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bsk-(?:ant-)?[A-Za-z0-9_-]{12,}\b")

_STANDARD_LOG_RECORD_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "thread",
        "threadName",
        "taskName",
    }
)

_CorrelationState = tuple[tuple[str, str], ...]
_CORRELATION_CONTEXT: contextvars.ContextVar[_CorrelationState] = contextvars.ContextVar(
    "team_workspace_correlation", default=()
)

_ACTIVE_HANDLE_LOCK = threading.Lock()
_ACTIVE_HANDLE: LoggingHandle | None = None


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Configuration for the workspace logger."""

    level: int | str = "WARNING"
    log_format: str = "text"
    logger_name: str = _DEFAULT_LOGGER_NAME
    log_dir: Path | str | None = None
    log_filename: str = _DEFAULT_LOG_FILENAME
    stream: TextIO | None = None
    redactor: LogRedactor | None = None


class LoggingHandle:
    """Runtime handle for an active logging setup."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        handlers: tuple[logging.Handler, ...],
        log_path: Path | None,
    ) -> None:
        self.logger = logger
        self.log_path = log_path
        self._handlers = handlers
        self._lock = threading.Lock()
        self._is_shutdown = False

    @property
    def is_shutdown(self) -> bool:
        return self._is_shutdown

    def flush(self) -> None:
        for handler in self._handlers:
            handler.flush()

    def shutdown(self) -> None:
        with self._lock:
            if self._is_shutdown:
                return
            for handler in self._handlers:
                self.logger.removeHandler(handler)
                handler.flush()
                handler.close()
            self._is_shutdown = True


class _JsonLineFormatter(logging.Formatter):
    """Formatter that emits canonical JSON objects per log line."""

    def __init__(self, *, redactor: LogRedactor) -> None:
        super().__init__()
        self._redactor = redactor

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, JSONValue] = {
            "timestamp": _iso8601z_from_epoch(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": _coerce_log_message(
                self._redactor(_normalize_json_value(record.getMessage()))
            ),
        }
        for key, value in sorted(_merge_correlation_context(record).items()):
            event[key] = value

        extras = _extract_extra_fields(record)
        if extras:
            event["fields"] = self._redactor(_normalize_json_value(extras))

        if record.exc_info is not None:
            event["exception"] = _coerce_log_message(
                self._redactor(_normalize_json_value(self.formatException(record.exc_info)))
            )
        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class _TextFormatter(logging.Formatter):
    """Single-line ``key=value`` formatter for interactive use."""

    def __init__(self, *, redactor: LogRedactor) -> None:
        super().__init__()
        self._redactor = redactor

    def format(self, record: logging.LogRecord) -> str:
        message = _coerce_log_message(self._redactor(_normalize_json_value(record.getMessage())))
        parts = [
            _iso8601z_from_epoch(record.created),
            record.levelname,
            record.name,
            message,
        ]
        context: dict[str, JSONValue] = dict(_merge_correlation_context(record))
        context.update(_extract_extra_fields(record))
        redacted = self._redactor(_normalize_json_value(context))
        if isinstance(redacted, dict):
            parts.extend(
                f"{key}={_coerce_log_message(value)}" for key, value in sorted(redacted.items())
            )
        line = " ".join(parts)
        if record.exc_info is not None:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    stream: TextIO | None = None,
    logger_name: str = _DEFAULT_LOGGER_NAME,
) -> logging.Logger:
    """Configure logging from an ``[observability]`` section and return the logger."""

    cfg = dict(observability_config or {})
    raw_level = cfg.get("log_level", "WARNING")
    level: int | str = raw_level if isinstance(raw_level, (int, str)) else "WARNING"
    raw_format = cfg.get("log_format", "text")
    log_format = raw_format if isinstance(raw_format, str) else "text"
    redact_enabled = bool(cfg.get("redact_secrets", True))
    log_dir: Path | str | None = None
    if bool(cfg.get("log_to_file", False)):
        raw_dir = cfg.get("log_dir")
        log_dir = raw_dir if isinstance(raw_dir, (Path, str)) else None

    handle = setup_structured_logging(
        LoggingConfig(
            level=level,
            log_format=log_format,
            logger_name=logger_name,
            log_dir=log_dir,
            stream=stream,
            redactor=None if redact_enabled else _identity_redactor,
        )
    )
    configure_structlog()
    return handle.logger


def setup_structured_logging(config: LoggingConfig) -> LoggingHandle:
    """Install handlers on the workspace logger, replacing any previous setup."""

    _shutdown_previous_active_handle()

    level = _parse_log_level(config.level)
    if config.log_format not in {"json", "text"}:
        raise ValueError(f"unsupported log format {config.log_format!r}")
    redactor = config.redactor if config.redactor is not None else default_log_redactor
    formatter: logging.Formatter
    if config.log_format == "json":
        formatter = _JsonLineFormatter(redactor=redactor)
    else:
        formatter = _TextFormatter(redactor=redactor)

    stream_handler = logging.StreamHandler(config.stream if config.stream is not None else sys.stderr)
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    handlers: list[logging.Handler] = [stream_handler]

    log_path: Path | None = None
    if config.log_dir is not None:
        log_dir = Path(config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / config.log_filename
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(level)
        # Files are always JSON lines so they stay machine readable.
        file_handler.setFormatter(_JsonLineFormatter(redactor=redactor))
        handlers.append(file_handler)

    logger = logging.getLogger(config.logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    for handler in handlers:
        logger.addHandler(handler)

    handle = LoggingHandle(logger=logger, handlers=tuple(handlers), log_path=log_path)
    with _ACTIVE_HANDLE_LOCK:
        global _ACTIVE_HANDLE
        _ACTIVE_HANDLE = handle
    return handle


def configure_structlog() -> None:
    """Route ``structlog`` events into stdlib logging so the handlers above format them."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def shutdown_logging(handle: LoggingHandle | None = None) -> None:
    """Flush and close the given (or active) handle."""

    resolved = handle if handle is not None else get_active_logging_handle()
    if resolved is None:
        return
    resolved.shutdown()
    with _ACTIVE_HANDLE_LOCK:
        global _ACTIVE_HANDLE
        if _ACTIVE_HANDLE is resolved:
            _ACTIVE_HANDLE = None


def get_active_logging_handle() -> LoggingHandle | None:
    with _ACTIVE_HANDLE_LOCK:
        return _ACTIVE_HANDLE


def get_correlation_context() -> dict[str, str]:
    """Return the current correlation context as a plain dictionary."""
    return dict(_CORRELATION_CONTEXT.get())


def set_correlation_fields(**fields: str | None) -> contextvars.Token[_CorrelationState]:
    """Set correlation fields for the active context and return a reset token."""
    state = get_correlation_context()
    for key, value in fields.items():
        key_name = _validate_correlation_text(key, "key")
        if value is None:
            state.pop(key_name, None)
            continue
        state[key_name] = _validate_correlation_text(value, "value")
    return _CORRELATION_CONTEXT.set(tuple(state.items()))


def reset_correlation_fields(token: contextvars.Token[_CorrelationState]) -> None:
    _CORRELATION_CONTEXT.reset(token)


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Temporarily bind correlation fields (``session_id``, ``message_id``, ...)."""
    token = set_correlation_fields(**fields)
    try:
        yield
    finally:
        reset_correlation_fields(token)


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Deep redaction for secret-looking keys and inline tokens."""
    return _redact_value(value, key_context=None)


def _shutdown_previous_active_handle() -> None:
    existing = get_active_logging_handle()
    if existing is not None:
        existing.shutdown()
    with _ACTIVE_HANDLE_LOCK:
        global _ACTIVE_HANDLE
        _ACTIVE_HANDLE = None


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    normalized = value.strip().upper()
    parsed = logging.getLevelName(normalized)
    if isinstance(parsed, int):
        return parsed
    raise ValueError(f"unsupported logging level {value!r}")


def _validate_correlation_text(value: str, label: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"correlation {label} must be a string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"correlation {label} must not be empty")
    return normalized


def _iso8601z_from_epoch(epoch_seconds: float) -> str:
    timestamp = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _coerce_log_message(value: JSONValue) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _merge_correlation_context(record: logging.LogRecord) -> dict[str, str]:
    merged = get_correlation_context()
    for key in _CORRELATION_KEYS:
        value = getattr(record, key, None)
        if isinstance(value, str) and value.strip():
            merged[key] = value.strip()
    return merged


def _extract_extra_fields(record: logging.LogRecord) -> dict[str, JSONValue]:
    fields: dict[str, JSONValue] = {}
    for key, value in record.__dict__.items():
        if key in _STANDARD_LOG_RECORD_FIELDS or key in _CORRELATION_KEYS:
            continue
        if key.startswith("_"):
            continue
        fields[key] = _normalize_json_value(value)
    return fields


def _normalize_json_value(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else _REDACTED_VALUE
    if isinstance(value, datetime):
        normalized = value.astimezone(UTC) if value.tzinfo else value.replace(tzinfo=UTC)
        return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _normalize_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_json_value(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_normalize_json_value(item) for item in value), key=repr)
    return repr(value)


def _identity_redactor(value: JSONValue) -> JSONValue:
    return value


def _redact_value(value: JSONValue, *, key_context: str | None) -> JSONValue:
    if key_context is not None and _requires_redaction_for_key(key_context):
        return _REDACTED_VALUE
    if isinstance(value, str):
        return _redact_string(value)
    if isinstance(value, list):
        return [_redact_value(item, key_context=None) for item in value]
    if isinstance(value, dict):
        return {key: _redact_value(item, key_context=key) for key, item in value.items()}
    return value


def _requires_redaction_for_key(key: str) -> bool:
    key_lower = key.lower()
    return any(term in key_lower for term in _SENSITIVE_KEY_TERMS)


def _redact_string(text: str) -> str:
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{_REDACTED_VALUE}", text
    )
    redacted = _BEARER_TOKEN_PATTERN.sub(f"Bearer {_REDACTED_VALUE}", redacted)
    return _PROVIDER_KEY_PATTERN.sub(_REDACTED_VALUE, redacted)


__all__ = [
    "JSONScalar",
    "JSONValue",
    "LogRedactor",
    "LoggingConfig",
    "LoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "reset_correlation_fields",
    "set_correlation_fields",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
