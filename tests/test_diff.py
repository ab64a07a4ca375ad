from __future__ import annotations

import random

import pytest

from cogit.core.diff import DiffEngine, _normalise, apply_hunks, edit_script, split_lines
from cogit.core.models import ChangeKind, DiffHunk, LineKind


def _lcs(a: list[str], b: list[str]) -> int:
    table = [[0] * (len(b) + 1) for _ in range(len(a) + 1)]
    for i in range(len(a) - 1, -1, -1):
        for j in range(len(b) - 1, -1, -1):
            table[i][j] = table[i + 1][j + 1] + 1 if a[i] == b[j] else max(table[i + 1][j], table[i][j + 1])
    return table[0][0]


def _assert_round_trip(old: str, new: str, hunks: list[DiffHunk]) -> None:
    old_lines, new_lines = split_lines(old), split_lines(new)
    for h in hunks:
        old_begin = h.old_start - 1 if h.old_count else h.old_start
        new_begin = h.new_start - 1 if h.new_count else h.new_start
        assert h.old_text() == "".join(old_lines[old_begin:old_begin + h.old_count])
        assert h.new_text() == "".join(new_lines[new_begin:new_begin + h.new_count])
    assert apply_hunks(old, hunks) == new
    assert apply_hunks(new, hunks, reverse=True) == old


PAIRS = [
    ("", ""),
    ("", "one\ntwo\n"),
    ("one\ntwo\n", ""),
    ("a\nb\nc\n", "a\nb\nc"),
    ("a\nb\nc", "a\nb\nc\nd"),
    ("no newline", "no newline\n"),
    ("a\r\nb\r\n", "a\r\nB\r\n"),
    ("\n\n\n", "\n\n"),
    ("line\n" * 20, "line\n" * 10 + "middle\n" + "line\n" * 10),
]


@pytest.mark.parametrize("old,new", PAIRS)
def test_round_trip(old: str, new: str) -> None:
    _assert_round_trip(old, new, DiffEngine().diff_text(old, new))


def test_random_pairs_are_minimal_and_round_trip() -> None:
    rng = random.Random(1234)
    engine = DiffEngine(context_lines=2)
    for _ in range(60):
        old = "".join(rng.choice("abcx") + "\n" for _ in range(rng.randint(0, 12)))
        new = "".join(rng.choice("abcy") + "\n" for _ in range(rng.randint(0, 12)))
        if rng.random() < 0.3:
            new = new.rstrip("\n")
        script = edit_script(split_lines(old), split_lines(new))
        changes = sum(1 for l in script if l.kind != LineKind.CONTEXT)
        a, b = split_lines(old), split_lines(new)
        assert changes == len(a) + len(b) - 2 * _lcs(a, b)
        _assert_round_trip(old, new, engine.diff_text(old, new))


def test_appended_line_is_one_hunk_with_context() -> None:
    old = "1\n2\n3\n4\n5\n"
    hunks = DiffEngine().diff_text(old, old + "6\n")
    assert len(hunks) == 1
    (hunk,) = hunks
    added = [l for l in hunk.lines if l.kind == LineKind.ADDED]
    assert [l.text for l in added] == ["6\n"]
    assert [l.text for l in hunk.lines if l.kind == LineKind.CONTEXT] == ["3\n", "4\n", "5\n"]
    assert (hunk.old_start, hunk.old_count, hunk.new_start, hunk.new_count) == (3, 3, 3, 4)


def test_diff_is_deterministic() -> None:
    old = "a\nb\na\nb\nc\n"
    new = "b\na\nc\nb\na\n"
    engine = DiffEngine()
    assert engine.diff_text(old, new) == engine.diff_text(old, new)


def test_context_window_controls_hunk_grouping() -> None:
    old = "".join(f"{i}\n" for i in range(1, 21))
    new = old.replace("2\n", "two\n", 1).replace("19\n", "nineteen\n")
    assert len(DiffEngine(context_lines=3).diff_text(old, new)) == 2
    assert len(DiffEngine(context_lines=10).diff_text(old, new)) == 1
    (first, _) = DiffEngine(context_lines=0).diff_text(old, new)
    assert all(l.kind != LineKind.CONTEXT for l in first.lines)
    with pytest.raises(ValueError):
        DiffEngine(context_lines=-1)


def test_insertions_slide_after_repeated_context() -> None:
    ops = [("=", "a\n"), ("+", "}\n"), ("+", "b\n"), ("=", "}\n"), ("=", "z\n")]
    assert _normalise(ops) == [("=", "a\n"), ("=", "}\n"), ("+", "b\n"), ("+", "}\n"), ("=", "z\n")]


def test_deletions_come_before_insertions_in_a_block() -> None:
    script = edit_script(["a\n", "old\n", "z\n"], ["a\n", "new\n", "z\n"])
    assert [l.kind for l in script] == [LineKind.CONTEXT, LineKind.REMOVED, LineKind.ADDED, LineKind.CONTEXT]


def test_binary_content_is_single_replace_hunk() -> None:
    diff = DiffEngine().diff_file("img.bin", b"\x00\x01\x02", b"\x00\x01\x03")
    assert diff.is_binary
    assert diff.change == ChangeKind.MODIFIED
    (hunk,) = diff.hunks
    assert [l.kind for l in hunk.lines] == [LineKind.REMOVED, LineKind.ADDED]
    assert "\\ No newline" not in diff.patch

    invalid_utf8 = DiffEngine().diff_file("x.txt", b"caf\xe9\n", b"cafe\n")
    assert invalid_utf8.is_binary


def test_patch_format() -> None:
    diff = DiffEngine().diff_file("a.txt", b"one\ntwo\n", b"one\nTWO")
    assert diff.patch == (
        "--- a/a.txt\n"
        "+++ b/a.txt\n"
        "@@ -1,2 +1,2 @@\n"
        " one\n"
        "-two\n"
        "+TWO\n"
        "\\ No newline at end of file\n"
    )


def test_added_and_deleted_file_headers() -> None:
    added = DiffEngine().diff_file("new.py", None, b"x = 1\n")
    assert added.change == ChangeKind.ADDED
    assert added.patch.startswith("--- /dev/null\n+++ b/new.py\n@@ -0,0 +1,1 @@\n")
    assert added.old_hash is None

    deleted = DiffEngine().diff_file("old.py", b"x = 1\n", None)
    assert deleted.change == ChangeKind.DELETED
    assert deleted.patch.startswith("--- a/old.py\n+++ /dev/null\n@@ -1,1 +0,0 @@\n")

    renamed = DiffEngine().diff_file("b.py", b"x\n", b"y\n", change=ChangeKind.RENAMED, old_path="a.py")
    assert renamed.patch.startswith("--- a/a.py\n+++ b/b.py\n")
