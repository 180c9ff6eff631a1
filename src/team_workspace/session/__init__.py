"""Caller-owned session history."""

from team_workspace.session.history import HistoryEntry, SessionHistory

__all__ = ["HistoryEntry", "SessionHistory"]
