"""
team-workspace — package root

Purpose
- Validate agent-produced messages, gate side effects behind an approval
  policy, and execute approved patches and commands inside a project root.

Import boundary
- Importing the package has no side effects (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
