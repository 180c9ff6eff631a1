from __future__ import annotations

import hashlib
import sys
from pathlib import Path

import pytest

from team_workspace.utils.fs import append_text, atomic_write, is_within, resolve_within
from team_workspace.utils.hashing import sha256_bytes, sha256_file, sha256_text


def test_atomic_write_replaces_content_and_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "notes.txt"
    target.write_text("old\n", encoding="utf-8")

    atomic_write(target, "new\r\nline\n")

    assert target.read_bytes() == b"new\r\nline\n"
    assert sorted(path.name for path in tmp_path.iterdir()) == ["notes.txt"]


def test_atomic_write_requires_existing_parent(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        atomic_write(tmp_path / "missing" / "file.txt", b"data")


def test_append_text_creates_parents(tmp_path: Path) -> None:
    target = tmp_path / "state" / "audit.log"

    append_text(target, "one\n")
    append_text(target, "two\n")

    assert target.read_text(encoding="utf-8") == "one\ntwo\n"


def test_resolve_within_accepts_nested_paths(tmp_path: Path) -> None:
    assert resolve_within(tmp_path, "src/app.py") == tmp_path.resolve() / "src" / "app.py"
    assert resolve_within(tmp_path, "src/../README.md") == tmp_path.resolve() / "README.md"


@pytest.mark.parametrize("candidate", ["../outside.txt", "a/../../outside.txt"])
def test_resolve_within_rejects_escapes(tmp_path: Path, candidate: str) -> None:
    root = tmp_path / "root"
    root.mkdir()

    assert resolve_within(root, candidate) is None


def test_resolve_within_rejects_absolute_outside(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()

    assert resolve_within(root, tmp_path / "other.txt") is None


@pytest.mark.skipif(sys.platform == "win32", reason="symlinks need privileges on Windows")
def test_resolve_within_follows_symlinks(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()
    outside = tmp_path / "outside"
    outside.mkdir()
    (root / "link").symlink_to(outside, target_is_directory=True)

    assert resolve_within(root, "link/file.txt") is None
    assert not is_within(root / "link" / "file.txt", root)


def test_is_within_handles_missing_parent(tmp_path: Path) -> None:
    assert is_within(tmp_path / "a" / "b", tmp_path)
    assert not is_within(tmp_path / "a", tmp_path / "absent")


def test_hash_helpers_agree(tmp_path: Path) -> None:
    target = tmp_path / "data.bin"
    target.write_bytes(b"team workspace")
    expected = hashlib.sha256(b"team workspace").hexdigest()

    assert sha256_bytes(b"team workspace") == expected
    assert sha256_text("team workspace") == expected
    assert sha256_file(target, chunk_size=3) == expected


def test_sha256_file_absent_and_bad_chunk(tmp_path: Path) -> None:
    assert sha256_file(tmp_path / "absent") is None
    with pytest.raises(ValueError, match="chunk_size"):
        sha256_file(tmp_path / "absent", chunk_size=0)
