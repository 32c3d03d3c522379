from __future__ import annotations

from citriage.agents.anchor import (
    AnchorResolver,
    find_line_by_regex,
    find_line_fuzzy,
    first_changed_hunk_start,
    nudge_anchor,
    strip_fence,
)
from citriage.models import Change, ChangeType, MatchHint, MatchKind


FILE = "def add(a, b):\n    return a - b\n\n\ndef mul(a, b):\n    return a * b\n"


def _change(after: str, *, line: int | None = None, match: MatchHint | None = None, path: str = "m.py") -> Change:
    return Change(path=path, anchor_line=line, after=after, match=match)


def test_exact_hint_is_authoritative() -> None:
    ch = _change("    return a + b", line=40, match=MatchHint(kind=MatchKind.exact, original="return a - b"))
    res = AnchorResolver().resolve(FILE, None, ch)
    assert res.line == 2
    assert res.resolved_by == "exact"
    assert res.is_noop is False


def test_noop_when_only_whitespace_differs() -> None:
    ch = _change("return  a  -  b", match=MatchHint(kind=MatchKind.exact, original="    return a - b   "))
    res = AnchorResolver().resolve(FILE, None, ch)
    assert res.line == 2
    assert res.is_noop is True


def test_not_noop_when_a_token_differs() -> None:
    ch = _change("    return a - c", match=MatchHint(kind=MatchKind.exact, original="return a - b"))
    res = AnchorResolver().resolve(FILE, None, ch)
    assert res.line == 2
    assert res.is_noop is False


def test_multiline_noop_compares_exactly_the_replacement_span() -> None:
    ch = _change("def add(a, b):\n    return a - b", match=MatchHint(kind=MatchKind.exact, original="def add(a, b):"))
    res = AnchorResolver().resolve(FILE, None, ch)
    assert res.line == 1
    assert res.is_noop is True


def test_whitespace_collapsed_multiline_window() -> None:
    content = "x = 1\nif  x:\n\tprint( x )\n"
    assert find_line_fuzzy(content, "if x:\n print( x )") == 2


def test_regex_hint() -> None:
    ch = _change("def mul(a, b, c):", match=MatchHint(kind=MatchKind.regex, pattern=r"^def mul"))
    res = AnchorResolver().resolve(FILE, None, ch)
    assert res.line == 5
    assert res.resolved_by == "regex"


def test_invalid_regex_falls_back_to_hunk() -> None:
    patch = "@@ -1,2 +5,2 @@\n-def mul(x):\n+def mul(a, b):\n"
    ch = _change("def mul(a, b, c):", match=MatchHint(kind=MatchKind.regex, pattern="(unclosed"))
    res = AnchorResolver().resolve(FILE, patch, ch)
    assert res.line == 5
    assert res.resolved_by == "hunk"


def test_nearest_changed_hunk_beats_line_guess() -> None:
    patch = "@@ -3,2 +5,2 @@\n-def mul(x):\n+def mul(a, b):\n"
    ch = _change("def mul(a, b, c):", line=1, match=MatchHint(kind=MatchKind.nearest_changed_hunk))
    res = AnchorResolver().resolve(FILE, patch, ch)
    assert res.line == 5
    assert first_changed_hunk_start(patch) == 5


def test_guess_used_when_no_hint_and_no_patch() -> None:
    res = AnchorResolver().resolve(FILE, None, _change("    return a * c", line=6))
    assert res.line == 6
    assert res.resolved_by == "guess"


def test_single_line_snap_corrects_small_drift() -> None:
    res = AnchorResolver().resolve(FILE, None, _change("def mul(a, b):", line=4))
    assert res.line == 5
    assert res.resolved_by == "snap"
    assert res.is_noop is True


def test_nudge_searches_only_near_the_guess() -> None:
    lines = [f"line_{i}" for i in range(1, 41)]
    content = "\n".join(lines) + "\n"
    assert nudge_anchor(content, "line_30", 25) == 30
    assert nudge_anchor(content, "line_30", 5) is None


def test_unresolved_without_any_signal() -> None:
    res = AnchorResolver().resolve(FILE, None, _change("x = 1"))
    assert res.line is None
    assert res.is_noop is False
    assert res.resolved_by == "unresolved"


def test_guess_beyond_end_of_file_is_unresolved() -> None:
    res = AnchorResolver().resolve(FILE, None, _change("x = 1", line=50))
    assert res.line is None


def test_fenced_replacement_is_unfenced() -> None:
    assert strip_fence("```python\n    return a + b\n```") == "    return a + b"
    assert strip_fence("```suggestion\nx\n```") == "x"
    assert strip_fence("plain") == "plain"


def test_validate_marks_real_fix() -> None:
    ch = _change("```python\n    return a + b\n```", match=MatchHint(kind=MatchKind.exact, original="return a - b"))
    out = AnchorResolver().validate(ch, file_text=FILE, patch=None)
    assert out.anchor_line == 2
    assert out.after == "    return a + b"
    assert out.type == ChangeType.fix
    assert out.is_real_fix is True


def test_validate_degrades_unresolved_to_diagnostic() -> None:
    out = AnchorResolver().validate(_change("x = 1"), file_text=FILE, patch=None)
    assert out.anchor_line is None
    assert out.type == ChangeType.diagnosis
    assert out.validation.applies_cleanly is False
    assert out.validation.is_noop is False
    assert out.is_real_fix is False


def test_validate_degrades_paths_outside_the_pr() -> None:
    ch = _change("    return a + b", line=2, match=MatchHint(kind=MatchKind.exact, original="return a - b"))
    out = AnchorResolver().validate(ch, file_text=FILE, patch=None, in_pr=False)
    assert out.anchor_line is None
    assert out.type == ChangeType.diagnosis


def test_validate_noop_is_diagnostic_not_fix() -> None:
    ch = _change("    return a - b", match=MatchHint(kind=MatchKind.exact, original="return a - b"))
    out = AnchorResolver().validate(ch, file_text=FILE, patch=None)
    assert out.anchor_line == 2
    assert out.validation.is_noop is True
    assert out.type == ChangeType.diagnosis


def test_replacement_running_past_eof_does_not_apply() -> None:
    ch = _change("    return a * b\n    # extra\n    # more", line=6)
    out = AnchorResolver().validate(ch, file_text=FILE, patch=None)
    assert out.anchor_line == 6
    assert out.validation.applies_cleanly is False


def test_validate_changes_over_a_change_set() -> None:
    fix = _change("    return a + b", match=MatchHint(kind=MatchKind.exact, original="return a - b"))
    outside = _change("x = 1", line=1, path="other.py")
    missing = _change("y = 2", line=1, path="gone.py")
    out = AnchorResolver().validate_changes(
        [fix, outside, missing],
        patches={"m.py": "@@ -1,2 +1,2 @@", "gone.py": None},
        contents={"m.py": FILE, "gone.py": None},
    )
    assert [c.type for c in out] == [ChangeType.fix, ChangeType.diagnosis, ChangeType.diagnosis]
    assert out[0].anchor_line == 2
    assert out[1].anchor_line is None and out[2].anchor_line is None


def test_deleting_a_line_next_to_a_blank_line_keeps_its_anchor() -> None:
    content = "import os\n\nDEBUG = True\nprint(DEBUG)\n"
    ch = Change(path="m.py", after="", match=MatchHint(kind=MatchKind.exact, original="DEBUG = True"))
    res = AnchorResolver().resolve(content, None, ch)
    assert res.line == 3
    assert res.resolved_by == "exact"
    assert res.is_noop is False


def test_regex_hint_is_matched_per_line() -> None:
    assert find_line_by_regex(FILE, r"return a \* b$") == 6
    assert find_line_by_regex(FILE, r"a - b\n\n") is None


def test_overlong_regex_hint_is_ignored() -> None:
    assert find_line_by_regex(FILE, "def mul" + " ?" * 200) is None
    patch = "@@ -1,2 +5,2 @@\n-def mul(x):\n+def mul(a, b):\n"
    ch = _change("def mul(a, b, c):", match=MatchHint(kind=MatchKind.regex, pattern="(a|a)*" * 50))
    res = AnchorResolver().resolve(FILE, patch, ch)
    assert res.line == 5
    assert res.resolved_by == "hunk"
