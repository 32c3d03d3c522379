from __future__ import annotations

import hashlib
import json
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from citriage.models import ActionType, ReviewComment, ReviewPayload, SolutionResult, StageResult
from citriage.parsers.log_text import truncate_bytes
from citriage.reports.review import ensure_permalink, render_review
from citriage.store.outbox import OutboxRepository
from citriage.telemetry.audit import AuditLogger


def canonical_json(v: Any) -> str:
    return json.dumps(v, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_action_hash(payload: ReviewPayload, *, head_sha: str) -> str:
    """
    sha256 over the canonical JSON of (type, owner, repo, PR, head commit, body, comments).
    No timestamps or ids take part, so the same logical review always hashes the same.
    """
    material: Dict[str, Any] = {
        "type": payload.type.value,
        "owner": payload.owner,
        "repo": payload.repo,
        "pull_number": payload.pull_number,
        "head_sha": head_sha,
        "body": payload.body,
        "comments": [c.model_dump(mode="json") for c in payload.comments],
    }
    return hashlib.sha256(canonical_json(material).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class OutboxStager:
    """Turns an accepted solution into one staged `pr_review` row, idempotently."""

    outbox: OutboxRepository
    audit: AuditLogger | None = None
    body_max_bytes: int = 18_000
    max_comments: int = 12

    def build_payload(
        self, *, owner: str, repo: str, pr_number: int, head_sha: str, body: str, comments: Sequence[ReviewComment]
    ) -> ReviewPayload:
        capped: List[ReviewComment] = [
            ensure_permalink(c, owner=owner, repo=repo, sha=head_sha) for c in list(comments)[: self.max_comments]
        ]
        return ReviewPayload(
            type=ActionType.pr_review,
            owner=owner,
            repo=repo,
            pull_number=int(pr_number),
            event="COMMENT",
            body=truncate_bytes(body or "", self.body_max_bytes),
            comments=capped,
        )

    def stage(
        self,
        *,
        owner: str,
        repo: str,
        pr_number: int | None,
        head_sha: str,
        solution: SolutionResult,
        installation_id: int | None = None,
        correlation_id: str = "outbox",
    ) -> StageResult:
        review = solution.review
        if not review.markdown and not review.comments:
            review = render_review(solution, owner=owner, repo=repo, head_sha=head_sha, max_comments=self.max_comments)
        return self.stage_review(
            owner=owner,
            repo=repo,
            pr_number=pr_number,
            head_sha=head_sha,
            body=review.markdown,
            comments=review.comments,
            installation_id=installation_id,
            correlation_id=correlation_id,
        )

    def stage_review(
        self,
        *,
        owner: str,
        repo: str,
        pr_number: int | None,
        head_sha: str,
        body: str,
        comments: Sequence[ReviewComment],
        installation_id: int | None = None,
        correlation_id: str = "outbox",
    ) -> StageResult:
        if not pr_number:
            return StageResult(ok=False, error="missing_pull_number")
        payload = self.build_payload(
            owner=owner, repo=repo, pr_number=pr_number, head_sha=head_sha, body=body, comments=comments
        )
        action_hash = compute_action_hash(payload, head_sha=head_sha)
        try:
            inserted = self.outbox.insert(
                action_hash=action_hash,
                action_type=payload.type.value,
                repo_owner=owner,
                repo_name=repo,
                pull_number=payload.pull_number,
                head_sha=head_sha,
                installation_id=installation_id,
                payload_json=payload.model_dump_json(),
            )
        except sqlite3.Error as e:
            self._audit(correlation_id, "outbox.stage_failed", {"action_hash": action_hash, "error": str(e)[:500]})
            return StageResult(ok=False, action_hash=action_hash, error=f"stage_failed: {e}")
        self._audit(
            correlation_id,
            "outbox.staged" if inserted else "outbox.already_staged",
            {"action_hash": action_hash, "owner": owner, "repo": repo, "pr": payload.pull_number, "comments": len(payload.comments)},
        )
        return StageResult(ok=True, action_hash=action_hash, already=not inserted)

    def _audit(self, correlation_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        if self.audit is not None:
            self.audit.write(correlation_id, event_type, payload)
