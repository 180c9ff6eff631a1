"""Unified diff parsing and strict in-memory application.

Hunks must match the current contents exactly at the position named by their
header; there is no fuzz and no offset search. A patch whose post-image is
already present is reported as a conflict, so applying the same diff twice
never duplicates content.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

from team_workspace.errors import PatchConflict

DEV_NULL: Final[str] = "/dev/null"
NO_NEWLINE_MARKER: Final[str] = "\\"

_HUNK_HEADER_RE: Final[re.Pattern[str]] = re.compile(
    r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@"
)
_HEADER_PREFIXES: Final[tuple[str, ...]] = (
    "diff --git ",
    "index ",
    "Index: ",
    "====",
    "new file mode ",
    "deleted file mode ",
    "old mode ",
    "new mode ",
    "similarity index ",
)


@dataclass(frozen=True, slots=True)
class HunkLine:
    op: str
    text: str

    @property
    def in_old(self) -> bool:
        return self.op in {" ", "-"}

    @property
    def in_new(self) -> bool:
        return self.op in {" ", "+"}


@dataclass(frozen=True, slots=True)
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: tuple[HunkLine, ...]

    def old_block(self) -> list[str]:
        return [line.text for line in self.lines if line.in_old]

    def new_block(self) -> list[str]:
        return [line.text for line in self.lines if line.in_new]

    @property
    def changes_content(self) -> bool:
        return any(line.op in {"+", "-"} for line in self.lines)

    def old_index(self) -> int:
        # A zero-length range names the line *after which* content goes.
        return self.old_start - 1 if self.old_count > 0 else self.old_start

    def new_index(self) -> int:
        return self.new_start - 1 if self.new_count > 0 else self.new_start


@dataclass(frozen=True, slots=True)
class FilePatch:
    old_path: str | None
    new_path: str | None
    hunks: tuple[Hunk, ...]

    @property
    def creates_file(self) -> bool:
        return self.old_path == DEV_NULL

    @property
    def deletes_file(self) -> bool:
        return self.new_path == DEV_NULL


def parse_unified_diff(diff: str, *, target: str) -> FilePatch:
    """Parse a single-file unified diff; malformed input raises ``PatchConflict``."""

    lines = _split_diff_lines(diff)
    old_path: str | None = None
    new_path: str | None = None
    hunks: list[Hunk] = []
    index = 0

    while index < len(lines):
        line = lines[index]
        if line.startswith("--- "):
            if hunks or old_path is not None:
                raise PatchConflict(target, "diff touches more than one file")
            old_path = _header_path(line[4:])
            index += 1
            continue
        if line.startswith("+++ "):
            if new_path is not None:
                raise PatchConflict(target, "diff touches more than one file")
            new_path = _header_path(line[4:])
            index += 1
            continue
        if line.startswith("@@"):
            hunk, index = _parse_hunk(lines, index, target=target, number=len(hunks) + 1)
            hunks.append(hunk)
            continue
        if line.startswith(_HEADER_PREFIXES) or not line.strip():
            index += 1
            continue
        raise PatchConflict(target, f"unexpected line {index + 1} in diff: {line[:40]!r}")

    if not hunks:
        raise PatchConflict(target, "diff contains no hunks")
    return FilePatch(old_path=old_path, new_path=new_path, hunks=tuple(hunks))


def apply_file_patch(original: str | None, patch: FilePatch, *, target: str) -> str | None:
    """Apply ``patch`` to ``original`` text.

    ``original`` is ``None`` when the file does not exist; the return value is
    ``None`` when the patch deletes the file.
    """

    if patch.creates_file and original is not None:
        raise PatchConflict(target, "diff creates a file that already exists")
    if not patch.creates_file and original is None:
        raise PatchConflict(target, "target file does not exist")

    current = split_lines(original or "")
    applied_reason = _already_applied(current, patch)
    if applied_reason is not None:
        raise PatchConflict(target, f"patch appears to be already applied: {applied_reason}")

    result: list[str] = []
    cursor = 0
    for number, hunk in enumerate(patch.hunks, start=1):
        old_block = hunk.old_block()
        start = hunk.old_index()
        if start < cursor:
            raise PatchConflict(target, f"hunk {number} overlaps a previous hunk")
        if current[start : start + len(old_block)] != old_block:
            raise PatchConflict(
                target,
                f"hunk {number} does not match current contents at line {start + 1}",
            )
        result.extend(current[cursor:start])
        result.extend(hunk.new_block())
        cursor = start + len(old_block)
    result.extend(current[cursor:])

    updated = "".join(result)
    if patch.deletes_file:
        if updated:
            raise PatchConflict(target, "deletion diff leaves content behind")
        return None
    return updated


def split_lines(text: str) -> list[str]:
    """Split on ``\\n`` only, keeping line endings (``\\r`` stays part of the line)."""

    parts = text.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def _already_applied(current: list[str], patch: FilePatch) -> str | None:
    """Return why ``patch`` looks applied to ``current``, or ``None``."""

    if patch.creates_file or patch.deletes_file:
        return None
    if not any(hunk.changes_content for hunk in patch.hunks):
        return None
    if not _side_matches(current, patch.hunks, new_side=True):
        return None
    if not _side_matches(current, patch.hunks, new_side=False):
        return "the post-image of every hunk is present and the pre-image is not"
    # Both images match. Appending after trailing context leaves the pre-image
    # intact, so for insertion-only patches the post-image wins.
    insertion_only = all(
        not any(line.op == "-" for line in hunk.lines)
        for hunk in patch.hunks
        if hunk.changes_content
    )
    if not insertion_only:
        return None
    return (
        "the inserted lines already follow their context; an insertion that"
        " repeats the lines after it cannot be told apart from a re-apply"
    )


def _side_matches(current: list[str], hunks: tuple[Hunk, ...], *, new_side: bool) -> bool:
    for hunk in hunks:
        block = hunk.new_block() if new_side else hunk.old_block()
        start = hunk.new_index() if new_side else hunk.old_index()
        if current[start : start + len(block)] != block:
            return False
    return True


def _parse_hunk(
    lines: list[str], index: int, *, target: str, number: int
) -> tuple[Hunk, int]:
    header = lines[index]
    match = _HUNK_HEADER_RE.match(header)
    if match is None:
        raise PatchConflict(target, f"malformed hunk header {header[:40]!r}")

    old_start = int(match.group(1))
    old_count = int(match.group(2)) if match.group(2) is not None else 1
    new_start = int(match.group(3))
    new_count = int(match.group(4)) if match.group(4) is not None else 1

    body: list[HunkLine] = []
    seen_old = 0
    seen_new = 0
    index += 1
    while index < len(lines) and (seen_old < old_count or seen_new < new_count):
        raw = lines[index]
        op = raw[:1] if raw else " "
        if op == NO_NEWLINE_MARKER:
            _strip_last_newline(body, target=target, number=number)
            index += 1
            continue
        if op not in {" ", "-", "+"}:
            break
        line = HunkLine(op=op, text=raw[1:] + "\n")
        body.append(line)
        if line.in_old:
            seen_old += 1
        if line.in_new:
            seen_new += 1
        index += 1

    if seen_old != old_count or seen_new != new_count:
        raise PatchConflict(
            target,
            f"hunk {number} is truncated: expected -{old_count}/+{new_count} lines, "
            f"found -{seen_old}/+{seen_new}",
        )

    while index < len(lines) and lines[index].startswith(NO_NEWLINE_MARKER):
        _strip_last_newline(body, target=target, number=number)
        index += 1

    return (
        Hunk(
            old_start=old_start,
            old_count=old_count,
            new_start=new_start,
            new_count=new_count,
            lines=tuple(body),
        ),
        index,
    )


def _strip_last_newline(body: list[HunkLine], *, target: str, number: int) -> None:
    if not body:
        raise PatchConflict(target, f"hunk {number} has a stray no-newline marker")
    last = body[-1]
    if last.text.endswith("\n"):
        body[-1] = HunkLine(op=last.op, text=last.text[:-1])


def _split_diff_lines(diff: str) -> list[str]:
    lines = diff.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def _header_path(raw: str) -> str:
    return raw.split("\t", 1)[0].strip()


__all__ = [
    "DEV_NULL",
    "FilePatch",
    "Hunk",
    "HunkLine",
    "apply_file_patch",
    "parse_unified_diff",
    "split_lines",
]
