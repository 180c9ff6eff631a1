"""Command-line surface for team-workspace."""

from team_workspace.ui.cli import CLIError, build_parser, run_cli
from team_workspace.ui.render import CLIRenderer, create_renderer

__all__ = ["CLIError", "CLIRenderer", "build_parser", "create_renderer", "run_cli"]
