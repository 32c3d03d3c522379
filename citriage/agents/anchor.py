from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from citriage.models import Change, ChangeType, ChangeValidation, MatchKind


NUDGE_RADIUS = 12
SNAP_RADIUS = 2
MAX_REGEX_PATTERN = 200
MAX_REGEX_LINE = 2000

_HUNK_RE = re.compile(r"@@ -\d+(?:,\d+)? \+(\d+)(?:,(\d+))? @@")
_FENCE_OPEN_RE = re.compile(r"^```(?:suggestion|[A-Za-z0-9_+\-]+)?[ \t]*\n")
_FENCE_CLOSE_RE = re.compile(r"\n?```[ \t]*$")
_WS_RUN_RE = re.compile(r"[ \t]+")


def to_lf(s: str | None) -> str:
    return (s or "").replace("\r\n", "\n")


def collapse_ws(s: str) -> str:
    return _WS_RUN_RE.sub(" ", s).strip()


def normalize_block(s: str | None) -> str:
    """Line-ending and whitespace-run insensitive form used for no-op and snap comparisons."""
    return _WS_RUN_RE.sub(" ", to_lf(s)).strip()


def strip_fence(s: str | None) -> str:
    """Drop a surrounding ``` / ```lang / ```suggestion fence, if any."""
    out = to_lf(s)
    if _FENCE_OPEN_RE.match(out):
        out = _FENCE_OPEN_RE.sub("", out, count=1)
        out = _FENCE_CLOSE_RE.sub("", out, count=1)
    return out


def file_lines(text: str | None) -> List[str]:
    t = to_lf(text)
    if t.endswith("\n"):
        t = t[:-1]
    return t.split("\n")


def _line_of_offset(text: str, idx: int) -> int:
    return text.count("\n", 0, idx) + 1


def find_line_fuzzy(content: str, needle: str) -> Optional[int]:
    """
    1-based line where `needle` starts in `content`, or None.

    Pass 1: literal search with trailing whitespace removed from every line on both sides.
    Pass 2: whitespace-collapsed comparison, single line or a contiguous multi-line window.
    """
    pin = to_lf(needle).strip("\n")
    if not pin.strip():
        return None

    hay_lines = file_lines(content)
    hay = "\n".join(ln.rstrip(" \t") for ln in hay_lines)
    pin1 = "\n".join(ln.rstrip(" \t") for ln in pin.split("\n"))
    idx = hay.find(pin1)
    if idx >= 0:
        return _line_of_offset(hay, idx)

    pin_lines = [collapse_ws(ln) for ln in pin.split("\n")]
    norm_hay = [collapse_ws(ln) for ln in hay_lines]
    n = len(pin_lines)
    if n == 1:
        for i, ln in enumerate(norm_hay):
            if ln == pin_lines[0]:
                return i + 1
        return None
    for i in range(0, len(norm_hay) - n + 1):
        if norm_hay[i : i + n] == pin_lines:
            return i + 1
    return None


def nudge_anchor(content: str, original: str, start: int, radius: int = NUDGE_RADIUS) -> Optional[int]:
    """Fuzzy-search `original` only inside [start - radius, start + radius]."""
    lines = file_lines(content)
    start = max(1, start)
    lo = max(1, start - radius)
    hi = min(len(lines), start + radius)
    if lo > hi:
        return None
    hit = find_line_fuzzy("\n".join(lines[lo - 1 : hi]), original)
    return lo + hit - 1 if hit else None


def find_line_by_regex(content: str, pattern: str) -> Optional[int]:
    """First 1-based line matching `pattern`; patterns never span lines."""
    if not pattern or len(pattern) > MAX_REGEX_PATTERN:
        return None
    try:
        rx = re.compile(pattern)
    except re.error:
        return None
    for i, ln in enumerate(file_lines(content), start=1):
        if rx.search(ln[:MAX_REGEX_LINE]):
            return i
    return None


def first_changed_hunk_start(patch: str | None) -> Optional[int]:
    """New-side start line `c` of the first `@@ -a,b +c,d @@` header."""
    if not patch:
        return None
    m = _HUNK_RE.search(patch)
    if not m:
        return None
    return max(1, int(m.group(1)))


@dataclass(frozen=True)
class AnchorResolution:
    line: Optional[int]
    normalized_edit: str
    is_noop: bool
    resolved_by: str  # exact|nudge|regex|hunk|guess|snap|unresolved
    span_fits: bool = False


class AnchorResolver:
    """
    Maps a proposed edit, which carries only an approximate location, onto an exact
    starting line of the current file.
    """

    def __init__(self, *, nudge_radius: int = NUDGE_RADIUS, snap_radius: int = SNAP_RADIUS) -> None:
        self.nudge_radius = nudge_radius
        self.snap_radius = snap_radius

    def resolve(self, file_text: str, patch: str | None, change: Change) -> AnchorResolution:
        edit = strip_fence(change.after)
        lines = file_lines(file_text)
        guess = change.anchor_line if change.anchor_line and change.anchor_line >= 1 else None
        hint = change.match

        line: Optional[int] = None
        how = "unresolved"
        if hint is not None and hint.kind == MatchKind.exact and hint.original.strip():
            found = find_line_fuzzy(file_text, hint.original)
            if found:
                line, how = found, "exact"
            elif guess:
                nudged = nudge_anchor(file_text, hint.original, guess, self.nudge_radius)
                if nudged:
                    line, how = nudged, "nudge"
        elif hint is not None and hint.kind == MatchKind.regex and hint.pattern:
            found = find_line_by_regex(file_text, hint.pattern)
            if found:
                line, how = found, "regex"

        if line is None:
            hunk = first_changed_hunk_start(patch)
            if hunk:
                line, how = hunk, "hunk"
            elif guess:
                line, how = guess, "guess"

        if line is not None and line > len(lines):
            line, how = None, "unresolved"

        if line is not None and edit and "\n" not in edit:
            target = normalize_block(edit)
            for delta in self._snap_offsets():
                i = line + delta
                if 1 <= i <= len(lines) and normalize_block(lines[i - 1]) == target:
                    if delta:
                        how = "snap"
                    line = i
                    break

        if line is None:
            return AnchorResolution(line=None, normalized_edit=edit, is_noop=False, resolved_by="unresolved")

        n = max(1, len(edit.split("\n")))
        current = "\n".join(lines[line - 1 : line - 1 + n])
        return AnchorResolution(
            line=line,
            normalized_edit=edit,
            is_noop=normalize_block(current) == normalize_block(edit),
            resolved_by=how,
            span_fits=line - 1 + n <= len(lines),
        )

    def validate(self, change: Change, *, file_text: str | None, patch: str | None, in_pr: bool = True) -> Change:
        """
        Returns a copy of `change` with a refined anchor and validation record.
        Changes outside the PR, or whose anchor cannot be resolved, degrade to diagnostics.
        """
        if not in_pr or file_text is None:
            return change.model_copy(
                update={
                    "anchor_line": None,
                    "after": strip_fence(change.after),
                    "validation": ChangeValidation(applies_cleanly=False, is_noop=False),
                    "type": ChangeType.diagnosis,
                }
            )
        res = self.resolve(file_text, patch, change)
        if res.line is None:
            return change.model_copy(
                update={
                    "anchor_line": None,
                    "after": res.normalized_edit,
                    "validation": ChangeValidation(applies_cleanly=False, is_noop=False),
                    "type": ChangeType.diagnosis,
                }
            )
        applies = bool(change.validation.applies_cleanly) and res.span_fits
        return change.model_copy(
            update={
                "anchor_line": res.line,
                "after": res.normalized_edit,
                "validation": ChangeValidation(applies_cleanly=applies, is_noop=res.is_noop),
                "type": ChangeType.fix if applies and not res.is_noop else ChangeType.diagnosis,
            }
        )

    def validate_changes(
        self,
        changes: List[Change],
        *,
        patches: Dict[str, Optional[str]],
        contents: Dict[str, Optional[str]],
    ) -> List[Change]:
        """`patches` maps every PR file to its diff; a path missing from it is outside the PR."""
        return [
            self.validate(ch, file_text=contents.get(ch.path), patch=patches.get(ch.path), in_pr=ch.path in patches)
            for ch in changes
        ]

    def _snap_offsets(self) -> List[int]:
        out = [0]
        for d in range(1, self.snap_radius + 1):
            out.extend([-d, d])
        return out
