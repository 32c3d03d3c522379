from __future__ import annotations

import re
from typing import List, Optional
from urllib.parse import quote

from citriage.models import Change, ReviewArtifacts, ReviewComment, SolutionResult


_PERMALINK_RE = re.compile(r"github\.com/.+/blob/.+#L\d+")

LEGEND = "**Legend:** 🔎 diagnostic anchor (source of error) • 💡 inline code suggestion"


def make_permalink(owner: str, repo: str, sha: str, path: str, start_line: int, end_line: Optional[int] = None) -> str:
    base = f"https://github.com/{owner}/{repo}/blob/{sha}/{quote(path)}"
    if end_line and end_line != start_line:
        return f"{base}#L{start_line}-L{end_line}"
    return f"{base}#L{start_line}"


def ensure_permalink(c: ReviewComment, *, owner: str, repo: str, sha: str) -> ReviewComment:
    if _PERMALINK_RE.search(c.body):
        return c
    link = make_permalink(owner, repo, sha, c.path, c.line)
    return c.model_copy(update={"body": f"{c.body}\n\n[🔗 Permalink]({link})"})


def _code_block(code: str, language: Optional[str]) -> str:
    return f"```{language or ''}\n{code}\n```"


def comment_body(change: Change, *, allow_inline: bool) -> str:
    if change.validation.is_noop or not change.is_real_fix:
        return "\n".join(
            [
                "🔎 **Source of error** — This is a diagnostic anchor (no code change).",
                "",
                _code_block(change.after, change.language),
            ]
        )
    if allow_inline:
        return "\n".join(["💡 **Suggested fix**", "", "```suggestion", change.after, "```"])
    return "\n".join(
        [
            "💡 **Suggested fix (comment-only; please review)**",
            "",
            _code_block(change.after, change.language),
        ]
    )


def diagnostic_bullets(items: List[tuple[str, Optional[int], str]]) -> str:
    """Body-level bullets for notes that cannot be attached to a diff line."""
    out: List[str] = []
    for path, line, text in items:
        where = f"`{path}`" + (f" line {line}" if line else "")
        first = (text or "").strip().split("\n", 1)[0]
        out.append(f"- {where}: {first[:300]}" if first else f"- {where}")
    return "\n".join(out)


def summary_markdown(solution: SolutionResult, *, unanchored: Optional[List[Change]] = None) -> str:
    s = solution.summary
    lines = [f"**Review** — {s.one_liner or 'CI failure triage'}", ""]
    if s.rationale:
        lines.append(f"**Rationale:** {s.rationale}")
    lines.append(f"**Confidence:** {round(s.confidence * 100)}% • **Risk:** {s.risk.value}")
    if not solution.policy.auto_suggestion_eligible and solution.policy.reason:
        lines.append(f"**Mode:** comment-only ({solution.policy.reason})")
    if s.references:
        lines.append("")
        lines.append("**References:**")
        lines.extend(f"- {r}" for r in s.references[:10])
    if unanchored:
        lines.append("")
        lines.append("**Diagnostics (no diff anchor):**")
        lines.append(diagnostic_bullets([(c.path, None, c.after) for c in unanchored]))
    lines.append("")
    lines.append(LEGEND)
    return "\n".join(lines)


def render_review(solution: SolutionResult, *, owner: str, repo: str, head_sha: str, max_comments: int = 12) -> ReviewArtifacts:
    """
    Review body plus inline comments. Only changes with a resolved anchor become inline
    comments; the rest are listed in the body as diagnostics.
    """
    allow_inline = solution.policy.auto_suggestion_eligible
    anchored = [c for c in solution.changes if c.anchor_line]
    unanchored = [c for c in solution.changes if not c.anchor_line]
    comments = [
        ensure_permalink(
            ReviewComment(path=c.path, line=int(c.anchor_line), body=comment_body(c, allow_inline=allow_inline)),
            owner=owner,
            repo=repo,
            sha=head_sha,
        )
        for c in anchored[:max_comments]
    ]
    return ReviewArtifacts(markdown=summary_markdown(solution, unanchored=unanchored), comments=comments)
