"""
cogit.core.diff — Line-based diff engine.

Computes a shortest edit script with Myers' O(ND) algorithm, normalises it so
ambiguous insert/delete blocks always land in the same place, and groups the
result into unified-diff hunks.

Lines keep their terminators, so concatenating a hunk's context + removed
lines reproduces the old slice byte for byte (and context + added lines the
new slice), including a final line without a newline.
"""

from __future__ import annotations

import logging
from typing import assert_never

from cogit.core.models import ChangeKind, DiffHunk, DiffLine, FileDiff, LineKind, hash_bytes

logger = logging.getLogger("cogit.diff")

DEFAULT_CONTEXT_LINES = 3
NO_NEWLINE_MARKER = "\\ No newline at end of file"

_EQ, _DEL, _INS = "=", "-", "+"


def split_lines(text: str) -> list[str]:
    """Split on ``\\n`` only, keeping terminators."""
    if not text:
        return []
    parts = text.split("\n")
    lines = [p + "\n" for p in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def is_binary(data: bytes) -> bool:
    if b"\x00" in data:
        return True
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return True
    return False


# ---------------------------------------------------------------------------
# Edit script
# ---------------------------------------------------------------------------

def _myers(a: list[str], b: list[str]) -> list[tuple[str, str]]:
    """Shortest edit script between *a* and *b* as ``(op, line)`` pairs."""
    n, m = len(a), len(b)
    if n == 0:
        return [(_INS, line) for line in b]
    if m == 0:
        return [(_DEL, line) for line in a]

    v: dict[int, int] = {1: 0}
    trace: list[dict[int, int]] = []
    for d in range(n + m + 1):
        trace.append(dict(v))
        done = False
        for k in range(-d, d + 1, 2):
            if k == -d or (k != d and v[k - 1] < v[k + 1]):
                x = v[k + 1]            # Move down: insertion
            else:
                x = v[k - 1] + 1        # Move right: deletion
            y = x - k
            while x < n and y < m and a[x] == b[y]:
                x += 1
                y += 1
            v[k] = x
            if x >= n and y >= m:
                done = True
                break
        if done:
            break

    ops: list[tuple[str, str]] = []
    x, y = n, m
    for d in range(len(trace) - 1, -1, -1):
        vd = trace[d]
        k = x - y
        if k == -d or (k != d and vd[k - 1] < vd[k + 1]):
            prev_k = k + 1
        else:
            prev_k = k - 1
        prev_x = vd[prev_k]
        prev_y = prev_x - prev_k
        while x > prev_x and y > prev_y:
            ops.append((_EQ, a[x - 1]))
            x -= 1
            y -= 1
        if d > 0:
            if x == prev_x:
                ops.append((_INS, b[y - 1]))
            else:
                ops.append((_DEL, a[x - 1]))
        x, y = prev_x, prev_y
    ops.reverse()
    return ops


def _normalise(ops: list[tuple[str, str]]) -> list[tuple[str, str]]:
    """
    Put deletions before insertions inside every change block, then slide
    pure insertion/deletion blocks down while the line after the block equals
    the block's first line.  Keeps repeated lines attached to the context
    that precedes them, the way ``git diff`` does.
    """
    out: list[tuple[str, str]] = []
    i = 0
    while i < len(ops):
        if ops[i][0] == _EQ:
            out.append(ops[i])
            i += 1
            continue
        j = i
        while j < len(ops) and ops[j][0] != _EQ:
            j += 1
        block = ops[i:j]
        out.extend(op for op in block if op[0] == _DEL)
        out.extend(op for op in block if op[0] == _INS)
        i = j

    i = 0
    while i < len(out):
        if out[i][0] == _EQ:
            i += 1
            continue
        j = i
        while j < len(out) and out[j][0] != _EQ:
            j += 1
        tag = out[i][0]
        if any(op[0] != tag for op in out[i:j]):
            i = j  # Replacement block: position is already fixed
            continue
        while j < len(out) and out[j][0] == _EQ and out[j][1] == out[i][1]:
            if j + 1 < len(out) and out[j + 1][0] != _EQ:
                break  # Would merge into the next block
            out[i:j + 1] = [(_EQ, out[i][1])] + out[i + 1:j] + [(tag, out[j][1])]
            i += 1
            j += 1
        i = j
    return out


def edit_script(old_lines: list[str], new_lines: list[str]) -> list[DiffLine]:
    """Full line-by-line edit script with 1-based line numbers."""
    prefix = 0
    while prefix < len(old_lines) and prefix < len(new_lines) and old_lines[prefix] == new_lines[prefix]:
        prefix += 1
    suffix = 0
    while (
        suffix < len(old_lines) - prefix
        and suffix < len(new_lines) - prefix
        and old_lines[-1 - suffix] == new_lines[-1 - suffix]
    ):
        suffix += 1

    middle = _myers(
        old_lines[prefix:len(old_lines) - suffix],
        new_lines[prefix:len(new_lines) - suffix],
    )
    ops = (
        [(_EQ, line) for line in old_lines[:prefix]]
        + middle
        + [(_EQ, line) for line in old_lines[len(old_lines) - suffix:]]
    )
    ops = _normalise(ops)

    result: list[DiffLine] = []
    old_no = new_no = 0
    for op, text in ops:
        if op == _EQ:
            old_no += 1
            new_no += 1
            result.append(DiffLine(kind=LineKind.CONTEXT, text=text, old_lineno=old_no, new_lineno=new_no))
        elif op == _DEL:
            old_no += 1
            result.append(DiffLine(kind=LineKind.REMOVED, text=text, old_lineno=old_no))
        else:
            new_no += 1
            result.append(DiffLine(kind=LineKind.ADDED, text=text, new_lineno=new_no))
    return result


# ---------------------------------------------------------------------------
# Hunks
# ---------------------------------------------------------------------------

def _make_hunk(script: list[DiffLine], lo: int, hi: int) -> DiffHunk:
    lines = script[lo:hi]
    old_before = sum(1 for l in script[:lo] if l.kind != LineKind.ADDED)
    new_before = sum(1 for l in script[:lo] if l.kind != LineKind.REMOVED)
    old_count = sum(1 for l in lines if l.kind != LineKind.ADDED)
    new_count = sum(1 for l in lines if l.kind != LineKind.REMOVED)
    return DiffHunk(
        old_start=old_before + 1 if old_count else old_before,
        old_count=old_count,
        new_start=new_before + 1 if new_count else new_before,
        new_count=new_count,
        lines=lines,
    )


def group_hunks(script: list[DiffLine], context_lines: int = DEFAULT_CONTEXT_LINES) -> list[DiffHunk]:
    """Group an edit script into hunks with *context_lines* on each side."""
    changed = [i for i, l in enumerate(script) if l.kind != LineKind.CONTEXT]
    if not changed:
        return []
    hunks: list[DiffHunk] = []
    start = changed[0]
    end = changed[0]
    for idx in changed[1:]:
        if idx - end - 1 > 2 * context_lines:
            hunks.append(_make_hunk(script, max(0, start - context_lines), min(len(script), end + 1 + context_lines)))
            start = idx
        end = idx
    hunks.append(_make_hunk(script, max(0, start - context_lines), min(len(script), end + 1 + context_lines)))
    return hunks


def apply_hunks(base: str, hunks: list[DiffHunk], reverse: bool = False) -> str:
    """
    Rebuild the new text from *base* (the old text) and *hunks*, or the old
    text from the new one when *reverse* is set.
    """
    lines = split_lines(base)
    out: list[str] = []
    pos = 0
    for hunk in hunks:
        start, count = (hunk.new_start, hunk.new_count) if reverse else (hunk.old_start, hunk.old_count)
        begin = start - 1 if count else start
        out.extend(lines[pos:begin])
        expected = hunk.new_text() if reverse else hunk.old_text()
        actual = "".join(lines[begin:begin + count])
        if actual != expected:
            raise ValueError(f"hunk @@ -{hunk.old_start},{hunk.old_count} does not apply")
        out.append(hunk.old_text() if reverse else hunk.new_text())
        pos = begin + count
    out.extend(lines[pos:])
    return "".join(out)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class DiffEngine:
    """Produces :class:`FileDiff` records and unified-diff patch text."""

    def __init__(self, context_lines: int = DEFAULT_CONTEXT_LINES) -> None:
        if context_lines < 0:
            raise ValueError("context_lines must be >= 0")
        self.context_lines = context_lines

    def diff_text(self, old: str, new: str) -> list[DiffHunk]:
        return group_hunks(edit_script(split_lines(old), split_lines(new)), self.context_lines)

    def diff_file(
        self,
        path: str,
        old: bytes | None,
        new: bytes | None,
        change: ChangeKind | None = None,
        old_path: str | None = None,
    ) -> FileDiff:
        """
        Diff two versions of one file.  ``None`` means the side does not exist
        (added or deleted file).  Non-text content becomes a single
        remove-everything / add-everything hunk.
        """
        if change is None:
            if old is None:
                change = ChangeKind.ADDED
            elif new is None:
                change = ChangeKind.DELETED
            else:
                change = ChangeKind.MODIFIED

        old_bytes = old or b""
        new_bytes = new or b""
        binary = is_binary(old_bytes) or is_binary(new_bytes)
        if binary:
            hunks = [self._binary_hunk(old_bytes, new_bytes)] if old_bytes != new_bytes else []
        else:
            hunks = self.diff_text(old_bytes.decode("utf-8"), new_bytes.decode("utf-8"))

        diff = FileDiff(
            path=path,
            change=change,
            old_path=old_path,
            old_hash=hash_bytes(old) if old is not None else None,
            new_hash=hash_bytes(new) if new is not None else None,
            is_binary=binary,
            hunks=hunks,
        )
        diff.patch = self.render_patch(diff)
        logger.debug("Diffed %s: %d hunk(s), binary=%s", path, len(hunks), binary)
        return diff

    @staticmethod
    def _binary_hunk(old: bytes, new: bytes) -> DiffHunk:
        """
        One placeholder line per side describing the payload (size and
        hash), not the payload itself.  Counts are always 0 or 1, so
        ``old_text()``/``new_text()`` and :func:`apply_hunks` do not
        reconstruct binary content; they hold only for text diffs.
        """
        lines: list[DiffLine] = []
        if old:
            lines.append(DiffLine(
                kind=LineKind.REMOVED,
                text=f"Binary content ({len(old)} bytes, sha256 {hash_bytes(old)[:12]})",
                old_lineno=1,
            ))
        if new:
            lines.append(DiffLine(
                kind=LineKind.ADDED,
                text=f"Binary content ({len(new)} bytes, sha256 {hash_bytes(new)[:12]})",
                new_lineno=1,
            ))
        return DiffHunk(
            old_start=1 if old else 0,
            old_count=1 if old else 0,
            new_start=1 if new else 0,
            new_count=1 if new else 0,
            lines=lines,
        )

    @staticmethod
    def render_patch(diff: FileDiff) -> str:
        """Render *diff* as unified-diff text."""
        match diff.change:
            case ChangeKind.ADDED:
                old_name, new_name = "/dev/null", f"b/{diff.path}"
            case ChangeKind.DELETED:
                old_name, new_name = f"a/{diff.path}", "/dev/null"
            case ChangeKind.MODIFIED:
                old_name, new_name = f"a/{diff.path}", f"b/{diff.path}"
            case ChangeKind.RENAMED:
                old_name, new_name = f"a/{diff.old_path or diff.path}", f"b/{diff.path}"
            case _:
                assert_never(diff.change)

        out = [f"--- {old_name}\n", f"+++ {new_name}\n"]
        prefixes = {LineKind.CONTEXT: " ", LineKind.ADDED: "+", LineKind.REMOVED: "-"}
        for hunk in diff.hunks:
            out.append(f"@@ -{hunk.old_start},{hunk.old_count} +{hunk.new_start},{hunk.new_count} @@\n")
            for line in hunk.lines:
                if line.text.endswith("\n"):
                    out.append(f"{prefixes[line.kind]}{line.text}")
                else:
                    out.append(f"{prefixes[line.kind]}{line.text}\n")
                    if not diff.is_binary:
                        out.append(NO_NEWLINE_MARKER + "\n")
        return "".join(out)
