from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from citriage.agents.anchor import AnchorResolver
from citriage.agents.budget import BudgetLimits, ToolBudgetGovernor, ToolLedger, ToolResponse
from citriage.agents.policy import evaluate_policy
from citriage.agents.tools import TOOL_SPECS, RepoTools
from citriage.errors import CollaboratorError, GitHubAuthError
from citriage.gitops.github_rest import GitHubRestClient
from citriage.llm.chat_client import ChatModel, parse_json_content
from citriage.models import (
    Change,
    ChangeValidation,
    Diagnosis,
    MatchHint,
    MatchKind,
    Risk,
    SolutionResult,
    SolutionSummary,
    ToolInvocation,
)
from citriage.parsers.log_text import clamp01, safe_preview, tail_lines
from citriage.reports.review import render_review
from citriage.telemetry.audit import AuditLogger


_SYSTEM_LINES = [
    "You are a CI triage assistant. Diagnose the build failure and propose minimal, safe fixes.",
    "Use tools sparingly and validate anchors against the changed files.",
    "Only modify files that are part of this pull request.",
    "If not confident, return diagnosis-only (no changes).",
    'Give every change a `match` hint: {"kind":"exact","original":"<1-2 verbatim old lines>"}, '
    '{"kind":"regex","pattern":"<regex>"}, or {"kind":"nearest_changed_hunk"} when unsure.',
    "`after` holds ONLY the replacement lines (no context); its line count is the replaced span.",
    "If a change would not alter the code after whitespace normalization, report it as a diagnostic instead.",
]

_OUTPUT_CONTRACT = {
    "summary": {
        "one_liner": "string",
        "rationale": "string",
        "risk": "low|medium|high",
        "confidence": "number 0..1",
        "references": ["string"],
    },
    "changes": [
        {
            "path": "repo-relative path",
            "anchor_line": "integer >= 1 or null",
            "after": "replacement text",
            "language": "string or null",
            "match": {"kind": "exact|regex|nearest_changed_hunk", "original": "string", "pattern": "string"},
            "validation": {"applies_cleanly": "boolean"},
        }
    ],
}


# ---------------------------------------------------------------- boundary normalization


def _first(d: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in d and d[k] is not None:
            return d[k]
    return None


def _to_int(v: Any) -> Optional[int]:
    try:
        n = int(v)
    except (TypeError, ValueError):
        return None
    return n if n >= 1 else None


def _normalize_match(raw: Any) -> Optional[MatchHint]:
    if not isinstance(raw, dict):
        return None
    try:
        kind = MatchKind(str(raw.get("kind") or MatchKind.nearest_changed_hunk.value))
    except ValueError:
        kind = MatchKind.nearest_changed_hunk
    return MatchHint(kind=kind, original=str(raw.get("original") or ""), pattern=str(raw.get("pattern") or ""))


def normalize_change(raw: Dict[str, Any]) -> Optional[Change]:
    """
    Accepts the change shapes models produce (`hunk.after` or `after`/`replacement`,
    `anchor.line` or `anchor_line`/`line`, camelCase validation keys) and returns one Change.
    Entries without a path are dropped.
    """
    path = str(_first(raw, "path", "file", "filename") or "").strip().lstrip("/")
    if not path:
        return None
    hunk = raw.get("hunk") if isinstance(raw.get("hunk"), dict) else {}
    after = _first(hunk, "after") if hunk else None
    if after is None:
        after = _first(raw, "after", "replacement", "suggestion")
    anchor = raw.get("anchor")
    line = _to_int(anchor.get("line")) if isinstance(anchor, dict) else _to_int(anchor)
    if line is None:
        line = _to_int(_first(raw, "anchor_line", "line"))
    val = raw.get("validation") if isinstance(raw.get("validation"), dict) else {}
    applies = _first(val, "applies_cleanly", "appliesCleanly")
    return Change(
        path=path,
        anchor_line=line,
        after=str(after or ""),
        language=(str(raw["language"]) if raw.get("language") else None),
        match=_normalize_match(raw.get("match")),
        validation=ChangeValidation(applies_cleanly=bool(True if applies is None else applies)),
    )


def normalize_solution(raw: Dict[str, Any]) -> tuple[SolutionSummary, List[Change]]:
    """
    One internal shape for both output variants: a nested `summary` object, or summary
    fields at the top level (diagnosis-only answers often omit `changes` entirely).
    Any `policy` the model volunteers is ignored; policy is always recomputed.
    """
    s = raw.get("summary") if isinstance(raw.get("summary"), dict) else raw
    try:
        risk = Risk(str(s.get("risk") or "medium").lower())
    except ValueError:
        risk = Risk.high
    refs = s.get("references") or []
    if isinstance(refs, str):
        refs = [refs]
    summary = SolutionSummary(
        one_liner=str(_first(s, "one_liner", "oneLiner", "title") or "")[:300],
        rationale=str(s.get("rationale") or "")[:4000],
        risk=risk,
        confidence=clamp01(s.get("confidence")),
        references=[str(r) for r in refs][:20],
    )
    items = raw.get("changes") or raw.get("suggestions") or []
    changes = [c for c in (normalize_change(it) for it in items if isinstance(it, dict)) if c is not None]
    return summary, changes


# ---------------------------------------------------------------- service


def _tool_args(tc: Dict[str, Any]) -> tuple[str, Dict[str, Any]]:
    fn = tc.get("function") or {}
    name = str(fn.get("name") or tc.get("name") or "")
    raw = fn.get("arguments") if "arguments" in fn else tc.get("args")
    if isinstance(raw, dict):
        return name, raw
    try:
        args = json.loads(raw or "{}")
    except json.JSONDecodeError:
        args = {}
    return name, args if isinstance(args, dict) else {}


@dataclass(frozen=True)
class SolutionService:
    """
    Default Solve step: a tool-calling conversation bounded by a fresh ToolBudgetGovernor,
    followed by boundary normalization, anchor validation, policy and review rendering.
    """

    llm: ChatModel
    github_for: Callable[[str, str, Optional[int]], GitHubRestClient]
    tau: float = 0.80
    limits: BudgetLimits = field(default_factory=BudgetLimits)
    resolver: AnchorResolver = field(default_factory=AnchorResolver)
    audit: AuditLogger | None = None
    max_comments: int = 12
    max_tool_rounds: int = 4
    solve_tail_lines: int = 150
    default_span: int = 80
    clock: Callable[[], float] = time.monotonic

    def solve(
        self,
        *,
        repo_owner: str,
        repo_name: str,
        pr_number: int | None,
        head_sha: str,
        log_window: str,
        diagnosis: Diagnosis,
        installation_id: int | None = None,
        correlation_id: str = "solution",
    ) -> SolutionResult:
        try:
            gh = self.github_for(repo_owner, repo_name, installation_id)
        except (GitHubAuthError, httpx.HTTPError) as e:
            raise CollaboratorError(f"solve_github_client_failed: {e}") from e
        tools = RepoTools(
            gh=gh, owner=repo_owner, repo=repo_name, pull_number=pr_number, head_sha=head_sha, default_span=self.default_span
        )
        governor = ToolBudgetGovernor(self.limits, clock=self.clock)
        ledger = ToolLedger()
        invocations: List[ToolInvocation] = []

        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": "\n".join(_SYSTEM_LINES)},
            *diagnosis.messages,
            {"role": "user", "content": self._user_prompt(repo_owner, repo_name, pr_number, head_sha, log_window, diagnosis)},
        ]

        content: Optional[str] = None
        try:
            for _ in range(self.max_tool_rounds):
                msg = self.llm.complete(messages=messages, tools=TOOL_SPECS if governor.has_budget() else None)
                tool_calls = list(msg.get("tool_calls") or [])
                if not tool_calls:
                    content = str(msg.get("content") or "")
                    break
                requests = []
                for tc in tool_calls:
                    name, args = _tool_args(tc)
                    req = ledger.open(call_id=tc.get("id"), name=name, args=args)
                    tc["id"] = req.call_id
                    requests.append(req)
                messages.append({"role": "assistant", "content": msg.get("content") or "", "tool_calls": tool_calls})
                for req in requests:
                    invocations.append(self._run_tool(tools, governor, ledger, req.call_id, req.name, req.args))
                ledger.settle()
                messages.extend(ledger.tool_messages(requests))
            if content is None:
                ledger.settle()
                messages.append(
                    {"role": "user", "content": "Tool budget is spent. Reply now with the final JSON object only."}
                )
                content = str(self.llm.complete(messages=messages, json_mode=True).get("content") or "")
            raw = parse_json_content(content)
        except (RuntimeError, ValueError, httpx.HTTPError) as e:
            raise CollaboratorError(f"solve_failed: {e}") from e

        summary, changes = normalize_solution(raw)
        validated = self._validate(tools, changes, correlation_id)
        policy = evaluate_policy(confidence=summary.confidence, risk=summary.risk, changes=validated, tau=self.tau)
        result = SolutionResult(summary=summary, changes=validated, tool_invocations=invocations, policy=policy)
        review = render_review(result, owner=repo_owner, repo=repo_name, head_sha=head_sha, max_comments=self.max_comments)
        if self.audit is not None:
            self.audit.write(
                correlation_id,
                "solution.completed",
                {
                    "confidence": summary.confidence,
                    "risk": summary.risk.value,
                    "changes": len(validated),
                    "real_fixes": sum(1 for c in validated if c.is_real_fix),
                    "tool_calls": governor.calls,
                    "eligible": policy.auto_suggestion_eligible,
                },
            )
        return result.model_copy(update={"review": review})

    def _user_prompt(
        self, owner: str, repo: str, pr_number: int | None, head_sha: str, log_window: str, diagnosis: Diagnosis
    ) -> str:
        parts = [
            f"Repository: {owner}/{repo}  PR: #{pr_number}  Head: {head_sha}",
            f"Budgets: max {self.limits.max_calls} tool calls, <= {self.limits.max_ms // 1000}s total tool time.",
            "STRUCTURED: " + diagnosis.structured.model_dump_json(),
        ]
        if diagnosis.similar_failures:
            parts.append(
                "SIMILAR_FAILS: " + json.dumps([f.model_dump(mode="json") for f in diagnosis.similar_failures[:3]])
            )
        if diagnosis.similar_solutions:
            parts.append(
                "SIMILAR_SOLNS: " + json.dumps([s.model_dump(mode="json") for s in diagnosis.similar_solutions[:2]])
            )
        parts.append("LOG_TAIL:\n" + tail_lines(log_window or diagnosis.window, self.solve_tail_lines))
        parts.append("Final answer: ONE JSON object matching\n" + json.dumps(_OUTPUT_CONTRACT, indent=2))
        return "\n\n".join(parts)

    def _run_tool(
        self,
        tools: RepoTools,
        governor: ToolBudgetGovernor,
        ledger: ToolLedger,
        call_id: str,
        name: str,
        args: Dict[str, Any],
    ) -> ToolInvocation:
        preview = safe_preview(args, 300)
        handler = tools.handlers().get(name)
        if handler is None:
            ledger.reply(call_id, ToolResponse(content={"error": f"unknown_tool: {name}"}, ok=False))
            return ToolInvocation(name=name, args_preview=preview, ms=0, ok=False)
        grant = governor.try_acquire(name)
        if not grant.granted:
            ledger.reply(
                call_id, ToolResponse(content=governor.exhausted_result(name, grant.reason), ok=False, denied=True)
            )
            return ToolInvocation(name=name, args_preview=preview, ms=0, ok=False)
        t0 = self.clock()
        try:
            content = handler(**args)
            ok = "error" not in content
        except (httpx.HTTPError, TypeError, ValueError) as e:
            content, ok = {"error": f"{type(e).__name__}: {str(e)[:300]}"}, False
        ms = int((self.clock() - t0) * 1000)
        governor.record(name, ms)
        ledger.reply(call_id, ToolResponse(content=content, ok=ok, ms=ms))
        return ToolInvocation(name=name, args_preview=preview, ms=ms, ok=ok)

    def _validate(self, tools: RepoTools, changes: List[Change], correlation_id: str) -> List[Change]:
        try:
            patches = {f["filename"]: f.get("patch") for f in tools.pr_files()}
        except httpx.HTTPError as e:
            raise CollaboratorError(f"list_pr_files_failed: {e}") from e
        contents: Dict[str, Optional[str]] = {}
        for path in {ch.path for ch in changes if ch.path in patches}:
            try:
                contents[path] = tools.file_text(path)
            except httpx.HTTPError as e:
                if self.audit is not None:
                    self.audit.write(correlation_id, "solution.file_fetch_failed", {"path": path, "error": str(e)[:300]})
        return self.resolver.validate_changes(changes, patches=patches, contents=contents)
