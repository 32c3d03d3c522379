from __future__ import annotations

import hashlib
import json
import re
from typing import Any


def sha1(s: str) -> str:
    return hashlib.sha1((s or "").encode("utf-8", errors="replace")).hexdigest()


def tail_lines(s: str | None, n: int) -> str:
    """Keep the last `n` lines (safe for empty input)."""
    lines = (s or "").split("\n")
    return "\n".join(lines[-n:]) if n > 0 else ""


def _basename(m: re.Match[str]) -> str:
    parts = re.split(r"[/\\]", m.group(0))
    return parts[-1] if parts else m.group(0)


_PATH_RE = re.compile(r"[/\\][^ \n\t]*")


def normalize(s: str | None) -> str:
    """
    Aggressive normalization for log signatures and similarity queries.
    Strips run-specific noise (timestamps, addresses, ids, absolute paths) and lowercases,
    so two runs of the same failure produce the same text.
    """
    t = s or ""
    t = re.sub(r"\d{4}-\d{2}-\d{2}[ T]\d{2}:\d{2}:\d{2}(\.\d+)?Z?", "<TIME>", t)
    t = re.sub(r"\d+:\d+", "L:C", t)
    t = re.sub(r"0x[0-9a-f]+", "0xADDR", t, flags=re.IGNORECASE)
    t = re.sub(r"\b[0-9a-f]{7,}\b", "HEX", t, flags=re.IGNORECASE)
    t = re.sub(r"\b\d{7,}\b", "N", t)
    t = _PATH_RE.sub(_basename, t)
    return t.lower().strip()


def templateize(s: str | None) -> str:
    """Light templating on top of `normalize`: every remaining number becomes N."""
    t = re.sub(r"\b\d+\b", "N", s or "")
    t = _PATH_RE.sub(_basename, t)
    return t.lower()


def signatures(norm_tail: str) -> tuple[str | None, str | None]:
    """(exact, templated) signatures of a normalized tail; None for an empty tail."""
    if not norm_tail:
        return None, None
    return sha1(norm_tail), sha1(templateize(norm_tail))


_SECRET_ASSIGN_RE = re.compile(
    r"\b([A-Z0-9_]*(TOKEN|SECRET|KEY|PASSWORD|PASS|PRIVATE|API)[A-Z0-9_]*)\s*[:=]\s*[\"']?([A-Za-z0-9_\-/+.=]{8,})[\"']?"
)
_GH_TOKEN_RE = re.compile(r"\bgh[opmsa]_[A-Za-z0-9_]{20,}\b")
_JWT_RE = re.compile(r"\beyJ[A-Za-z0-9_\-]{10,}\.[A-Za-z0-9_\-]{10,}\.[A-Za-z0-9_\-]{10,}\b")


def redact_secrets(s: str | None) -> str:
    """Best-effort redaction before log text leaves the process (LLM prompts, stored artifacts)."""
    t = _SECRET_ASSIGN_RE.sub(r"\1=***REDACTED***", s or "")
    t = _GH_TOKEN_RE.sub("***REDACTED***", t)
    return _JWT_RE.sub("***REDACTED***", t)


def clamp01(x: Any) -> float:
    try:
        v = float(x)
    except (TypeError, ValueError):
        return 0.0
    if v != v:  # NaN
        return 0.0
    return max(0.0, min(1.0, v))


def json_clamp(v: Any, max_chars: int = 800_000) -> str:
    s = json.dumps(v, ensure_ascii=False, default=str)
    if len(s) > max_chars:
        return s[:max_chars] + f" /* truncated {len(s) - max_chars} chars */"
    return s


def safe_preview(v: Any, max_chars: int = 2000) -> str:
    if isinstance(v, str):
        s = v
    else:
        try:
            s = json.dumps(v, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            s = str(v)
    if len(s) > max_chars:
        return s[:max_chars] + f"… (truncated, {len(s) - max_chars} more chars)"
    return s


def truncate_bytes(s: str, max_bytes: int, *, marker: str = "\n\n… _truncated_") -> str:
    """Cut `s` so its UTF-8 encoding (marker included) fits in `max_bytes`."""
    raw = s.encode("utf-8")
    if len(raw) <= max_bytes:
        return s
    keep = max(0, max_bytes - len(marker.encode("utf-8")))
    return raw[:keep].decode("utf-8", errors="ignore") + marker


def norm_tail(s: str | None, n: int = 300) -> str:
    """Normalized, redacted last `n` lines: the input to both signatures."""
    return normalize(redact_secrets(tail_lines(s, n)))
