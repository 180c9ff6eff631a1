"""Module entrypoint for ``python -m team_workspace``."""

from __future__ import annotations

from team_workspace.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
