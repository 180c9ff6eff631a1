"""
team-workspace — unit tests for unified diff parsing and application

What this test file should cover
- Modify, create and delete patches.
- Exact-position matching with no fuzz; conflicts leave no partial result.
- Re-applying a patch is a conflict rather than duplicated content.
- Line endings and missing trailing newlines are preserved.
"""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from team_workspace.errors import PatchConflict
from team_workspace.executor.patching import apply_file_patch, parse_unified_diff, split_lines

MODIFY = "--- a/notes.txt\n+++ b/notes.txt\n@@ -2 +2 @@\n-beta\n+BETA\n"


def _apply(original: str | None, diff: str) -> str | None:
    return apply_file_patch(original, parse_unified_diff(diff, target="notes.txt"), target="notes.txt")


def test_modify_patch_replaces_exact_line() -> None:
    assert _apply("alpha\nbeta\ngamma\n", MODIFY) == "alpha\nBETA\ngamma\n"


def test_create_patch_builds_new_file() -> None:
    diff = "--- /dev/null\n+++ b/notes.txt\n@@ -0,0 +1,2 @@\n+one\n+two\n"

    patch = parse_unified_diff(diff, target="notes.txt")

    assert patch.creates_file
    assert apply_file_patch(None, patch, target="notes.txt") == "one\ntwo\n"


def test_create_patch_against_existing_file_conflicts() -> None:
    diff = "--- /dev/null\n+++ b/notes.txt\n@@ -0,0 +1 @@\n+one\n"

    with pytest.raises(PatchConflict, match="already exists"):
        _apply("present\n", diff)


def test_delete_patch_returns_none() -> None:
    diff = "--- a/notes.txt\n+++ /dev/null\n@@ -1,2 +0,0 @@\n-one\n-two\n"

    assert _apply("one\ntwo\n", diff) is None


def test_delete_patch_must_remove_everything() -> None:
    diff = "--- a/notes.txt\n+++ /dev/null\n@@ -1 +0,0 @@\n-one\n"

    with pytest.raises(PatchConflict, match="leaves content behind"):
        _apply("one\ntwo\n", diff)


def test_missing_target_conflicts() -> None:
    with pytest.raises(PatchConflict, match="does not exist"):
        _apply(None, MODIFY)


def test_context_mismatch_conflicts() -> None:
    with pytest.raises(PatchConflict, match="hunk 1 does not match current contents at line 2"):
        _apply("alpha\nbravo\ngamma\n", MODIFY)


def test_no_fuzzy_offset_search() -> None:
    # "beta" exists, just not on line 2.
    with pytest.raises(PatchConflict):
        _apply("beta\nalpha\ngamma\n", MODIFY)


def test_reapplying_a_patch_conflicts() -> None:
    once = _apply("alpha\nbeta\ngamma\n", MODIFY)

    with pytest.raises(PatchConflict, match="already applied"):
        _apply(once, MODIFY)


def test_reapplying_an_insertion_conflicts() -> None:
    diff = "--- a/notes.txt\n+++ b/notes.txt\n@@ -1,0 +2 @@\n+inserted\n"

    once = _apply("alpha\nbeta\n", diff)

    assert once == "alpha\ninserted\nbeta\n"
    with pytest.raises(PatchConflict, match="already applied"):
        _apply(once, diff)


def test_reapply_reasons_name_the_heuristic() -> None:
    once = _apply("alpha\nbeta\ngamma\n", MODIFY)
    with pytest.raises(PatchConflict, match="post-image of every hunk is present"):
        _apply(once, MODIFY)

    # Duplicating a line that already follows the insertion point is refused.
    duplicate = "--- a/notes.txt\n+++ b/notes.txt\n@@ -1,0 +2 @@\n+x\n"
    with pytest.raises(PatchConflict, match="cannot be told apart from a re-apply") as info:
        _apply("a\nx\nb\n", duplicate)

    assert "does not match current contents" not in info.value.reason


def test_multiple_hunks_apply_in_order() -> None:
    original = "".join(f"line{n}\n" for n in range(1, 11))
    diff = (
        "--- a/notes.txt\n+++ b/notes.txt\n"
        "@@ -2 +2 @@\n-line2\n+LINE2\n"
        "@@ -9,2 +9 @@\n-line9\n line10\n"
    )

    updated = _apply(original, diff)

    assert updated is not None
    assert split_lines(updated)[1] == "LINE2\n"
    assert updated.endswith("line8\nline10\n")


def test_missing_trailing_newline_is_preserved() -> None:
    diff = (
        "--- a/notes.txt\n+++ b/notes.txt\n@@ -1 +1 @@\n"
        "-old\n\\ No newline at end of file\n+new\n\\ No newline at end of file\n"
    )

    assert _apply("old", diff) == "new"


def test_carriage_returns_stay_part_of_the_line() -> None:
    assert split_lines("a\r\nb\r\nc") == ["a\r\n", "b\r\n", "c"]


@pytest.mark.parametrize(
    ("diff", "reason"),
    [
        ("--- a/x\n+++ b/x\n", "no hunks"),
        ("--- a/x\n+++ b/x\n@@ -1,2 +1,2 @@\n-a\n+b\n", "truncated"),
        ("--- a/x\n+++ b/x\n@@ -1 +1 @@\n-a\n+b\n--- a/y\n+++ b/y\n@@ -1 +1 @@\n-a\n+b\n", "more than one file"),
        ("--- a/x\n+++ b/x\n@@ bogus @@\n", "malformed hunk header"),
        ("please edit the file\n", "unexpected line"),
    ],
)
def test_malformed_diffs_are_conflicts(diff: str, reason: str) -> None:
    with pytest.raises(PatchConflict, match=reason):
        parse_unified_diff(diff, target="x")


def test_git_headers_are_ignored() -> None:
    diff = (
        "diff --git a/notes.txt b/notes.txt\nindex 123..456 100644\n" + MODIFY
    )

    assert _apply("alpha\nbeta\ngamma\n", diff) == "alpha\nBETA\ngamma\n"


@settings(max_examples=80, deadline=None)
@given(
    lines=st.lists(st.text(alphabet="abcxyz ", max_size=8), min_size=1, max_size=20),
    data=st.data(),
)
def test_single_line_replacement_touches_only_that_line(lines: list[str], data: st.DataObject) -> None:
    index = data.draw(st.integers(min_value=0, max_value=len(lines) - 1))
    original = "".join(line + "\n" for line in lines)
    replacement = "#" + lines[index]
    diff = (
        "--- a/notes.txt\n+++ b/notes.txt\n"
        f"@@ -{index + 1} +{index + 1} @@\n-{lines[index]}\n+{replacement}\n"
    )

    updated = _apply(original, diff)

    assert updated is not None
    expected = list(lines)
    expected[index] = replacement
    assert updated == "".join(line + "\n" for line in expected)
