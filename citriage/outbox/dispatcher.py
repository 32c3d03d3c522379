from __future__ import annotations

import json
import re
import sqlite3
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from citriage.gitops.github_rest import GitHubRestClient
from citriage.models import ActionType, DispatchResult, OutboundAction, ReviewComment
from citriage.parsers.log_text import truncate_bytes
from citriage.reports.review import diagnostic_bullets
from citriage.store.outbox import OutboxRepository
from citriage.telemetry.audit import AuditLogger


_HUNK_HEADER_RE = re.compile(r"^@@ -\d+(?:,\d+)? \+(\d+)(?:,\d+)? @@")


def commentable_lines(patch: str | None) -> Set[int]:
    """New-side line numbers covered by the hunks of a unified-diff patch (added and context lines)."""
    out: Set[int] = set()
    if not patch:
        return out
    line: Optional[int] = None
    for raw in patch.split("\n"):
        m = _HUNK_HEADER_RE.match(raw)
        if m:
            line = int(m.group(1))
            continue
        if line is None:
            continue
        if raw.startswith("-"):
            continue
        if raw.startswith("\\"):
            # "\ No newline at end of file"
            continue
        out.add(line)
        line += 1
    return out


def split_comments(
    comments: List[ReviewComment], pr_files: List[Dict[str, Any]]
) -> tuple[List[ReviewComment], List[ReviewComment]]:
    """(still anchored in the current diff, demoted) for a review's inline comments."""
    valid: Dict[str, Set[int]] = {f["filename"]: commentable_lines(f.get("patch")) for f in pr_files}
    keep: List[ReviewComment] = []
    demoted: List[ReviewComment] = []
    for c in comments:
        if c.line in valid.get(c.path, set()):
            keep.append(c)
        else:
            demoted.append(c)
    return keep, demoted


@dataclass(frozen=True)
class OutboxDispatcher:
    """
    Publishes staged review actions. Each row is leased (staged → dispatching) before any
    API call, then ends `dispatched` or `error`. Rows in `error` are not retried here.
    """

    outbox: OutboxRepository
    client_for: Callable[[str, str, Optional[int]], GitHubRestClient]
    audit: AuditLogger | None = None
    default_batch: int = 5
    max_batch: int = 50
    body_max_bytes: int = 18_000
    error_max_chars: int = 1000

    def dispatch_batch(self, limit: int | None = None, *, correlation_id: str = "dispatch") -> List[DispatchResult]:
        n = max(1, min(int(limit or self.default_batch), self.max_batch))
        results: List[DispatchResult] = []
        for action in self.outbox.list_staged(n):
            results.append(self._dispatch_one(action, correlation_id))
        self._audit(
            correlation_id,
            "outbox.batch_done",
            {
                "selected": len(results),
                "dispatched": sum(1 for r in results if r.ok and not r.skipped),
                "errors": sum(1 for r in results if not r.ok),
            },
        )
        return results

    def _dispatch_one(self, action: OutboundAction, correlation_id: str) -> DispatchResult:
        if action.action_type != ActionType.pr_review:
            return DispatchResult(id=action.id, ok=True, skipped=True, error=f"unsupported_action_type: {action.action_type}")
        try:
            leased = self.outbox.try_lease(action.id)
        except sqlite3.Error as e:
            err = f"lease_failed: {type(e).__name__}: {e}"[: self.error_max_chars]
            self._audit(correlation_id, "outbox.lease_failed", {"id": action.id, "action_hash": action.action_hash, "error": err})
            return DispatchResult(id=action.id, ok=False, error=err)
        if not leased:
            return DispatchResult(id=action.id, ok=True, skipped=True, error="already_leased")
        try:
            payload = action.payload()
            gh = self.client_for(action.repo_owner, action.repo_name, action.installation_id)
            files = gh.list_pr_files(owner=payload.owner, repo=payload.repo, pull_number=payload.pull_number)
            keep, demoted = split_comments(payload.comments, files)
            body = payload.body
            if demoted:
                bullets = diagnostic_bullets([(c.path, c.line, c.body) for c in demoted])
                body = f"{body}\n\n**Notes outside the current diff:**\n{bullets}"
            body = truncate_bytes(body, self.body_max_bytes)
            resp = gh.create_review(
                owner=payload.owner,
                repo=payload.repo,
                pull_number=payload.pull_number,
                body=body,
                comments=[c.model_dump(mode="json") for c in keep],
                event=payload.event,
                commit_id=action.head_sha,
            )
        except Exception as e:  # noqa: BLE001 (recorded on the row; the batch continues)
            err = f"{type(e).__name__}: {e}"[: self.error_max_chars]
            self._record_error(action, err, correlation_id)
            return DispatchResult(id=action.id, ok=False, error=err)

        try:
            self.outbox.mark_dispatched(
                action.id, response_json=json.dumps({"id": resp.get("id"), "html_url": resp.get("html_url")})
            )
        except sqlite3.Error as e:
            # The review is already posted; `error` keeps the row out of later batches.
            err = f"posted_but_unrecorded: {type(e).__name__}: {e}"[: self.error_max_chars]
            self._record_error(action, err, correlation_id)
            return DispatchResult(id=action.id, ok=False, error=err)
        self._audit(
            correlation_id,
            "outbox.dispatched",
            {"id": action.id, "action_hash": action.action_hash, "inline": len(keep), "demoted": len(demoted)},
        )
        return DispatchResult(id=action.id, ok=True, demoted_comments=len(demoted))

    def _record_error(self, action: OutboundAction, err: str, correlation_id: str) -> None:
        payload: Dict[str, Any] = {"id": action.id, "action_hash": action.action_hash, "error": err}
        try:
            self.outbox.mark_error(action.id, error=err)
        except sqlite3.Error as e:
            payload["bookkeeping_error"] = str(e)[:300]
        self._audit(correlation_id, "outbox.dispatch_failed", payload)

    def _audit(self, correlation_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        if self.audit is not None:
            self.audit.write(correlation_id, event_type, payload)
