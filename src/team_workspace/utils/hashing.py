"""
team-workspace — hashing utilities

Purpose
- Deterministic SHA-256 helpers for message fingerprints and file snapshots
  recorded in the audit trail.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

PathLike = str | os.PathLike[str]

_FILE_READ_CHUNK_BYTES = 1024 * 1024

__all__ = [
    "sha256_bytes",
    "sha256_file",
    "sha256_text",
]


def sha256_bytes(data: bytes) -> str:
    """Return SHA-256 hex digest for raw bytes."""

    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    """Return SHA-256 hex digest for text encoded with ``encoding``."""

    return sha256_bytes(text.encode(encoding))


def sha256_file(path: PathLike, *, chunk_size: int = _FILE_READ_CHUNK_BYTES) -> str | None:
    """Return SHA-256 hex digest for a file read in chunks, or ``None`` if absent."""

    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    target = Path(path)
    if not target.is_file():
        return None
    digest = hashlib.sha256()
    with target.open("rb") as file_handle:
        while True:
            chunk = file_handle.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()
