"""Logging setup and correlation helpers."""

from team_workspace.observability.logging import (
    LoggingConfig,
    LoggingHandle,
    configure_structlog,
    correlation_scope,
    default_log_redactor,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "LoggingConfig",
    "LoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
