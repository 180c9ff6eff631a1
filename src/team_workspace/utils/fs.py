"""
team-workspace — filesystem utilities

Purpose
- Containment checks that keep executor writes inside the project root.
- Atomic writes and appends so a failed operation never leaves partial state.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step.
- Containment is decided on fully resolved paths, so symlinks cannot escape the root.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

__all__ = [
    "append_text",
    "atomic_write",
    "is_within",
    "resolve_within",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        if isinstance(data, bytes):
            with os.fdopen(fd, "wb") as file_handle:
                file_handle.write(data)
                file_handle.flush()
                os.fsync(file_handle.fileno())
        else:
            # newline="" keeps line endings exactly as given.
            with os.fdopen(fd, "w", encoding=encoding, newline="") as file_handle:
                file_handle.write(data)
                file_handle.flush()
                os.fsync(file_handle.fileno())

        if target.exists():
            with contextlib.suppress(OSError):
                os.chmod(temp_path, target.stat().st_mode & 0o7777)
        os.replace(temp_path, target)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def append_text(path: PathLike, text: str, *, encoding: str = "utf-8") -> None:
    """Append ``text`` to ``path`` in one write, creating parent directories."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("a", encoding=encoding, newline="") as handle:
        handle.write(text)
        handle.flush()
        os.fsync(handle.fileno())


def resolve_within(root: PathLike, candidate: PathLike) -> Path | None:
    """
    Resolve ``candidate`` against ``root`` and return it if it stays inside.

    ``candidate`` need not exist. Absolute candidates are honoured as-is, so an
    absolute path outside the root is rejected rather than re-rooted.
    """

    resolved_root = Path(root).resolve(strict=True)
    raw = Path(candidate)
    joined = raw if raw.is_absolute() else resolved_root / raw
    resolved = joined.resolve(strict=False)
    if not _is_relative_to(resolved, resolved_root):
        return None
    return resolved


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if resolved ``child`` is within resolved ``parent``."""

    try:
        resolved_parent = Path(parent).resolve(strict=True)
    except FileNotFoundError:
        return False
    if not resolved_parent.is_dir():
        return False

    resolved_child = Path(child).resolve(strict=False)
    return _is_relative_to(resolved_child, resolved_parent)


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True
