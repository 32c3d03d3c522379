from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from citriage.models import SimilarSolution, SolutionResult
from citriage.parsers.log_text import json_clamp, redact_secrets
from citriage.store.db import Database


def _redact_md(s: str) -> str:
    return "\n".join(ln if len(ln) <= 4000 else ln[:4000] + " …" for ln in redact_secrets(s).split("\n"))


def _safe_json(s: Optional[str]) -> Any:
    if not s:
        return None
    try:
        return json.loads(s)
    except json.JSONDecodeError:
        return None


@dataclass(frozen=True)
class KnowledgeStore:
    """Produced solution artifacts (`fix_recommendations`), one row per (failure, head commit)."""

    db: Database

    def record_solution_artifacts(
        self,
        *,
        failure_id: int,
        repo_owner: str,
        repo_name: str,
        pr_number: int | None,
        head_sha: str,
        solution: SolutionResult,
    ) -> bool:
        """
        Persist the solution and mark the failure `proposed`, in one transaction.
        Re-persisting the same (failure_id, head_sha) keeps the first row; returns whether a
        new row was written.
        """
        s = solution.summary
        with self.db.transaction() as con:
            con.execute("UPDATE build_failures SET status='proposed' WHERE failure_id=?", (failure_id,))
            cur = con.execute(
                """
                INSERT INTO fix_recommendations
                    (failure_id, repo_owner, repo_name, pr_number, head_sha,
                     summary_json, changes_json, policy_json, tool_inv_json, summary_md,
                     summary_one_liner, rationale)
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
                ON CONFLICT(failure_id, head_sha) DO NOTHING
                """,
                (
                    failure_id,
                    repo_owner,
                    repo_name,
                    pr_number,
                    head_sha,
                    json_clamp(s.model_dump(mode="json")),
                    json_clamp([c.model_dump(mode="json") for c in solution.changes]),
                    json_clamp(solution.policy.model_dump(mode="json")),
                    json_clamp([t.model_dump(mode="json") for t in solution.tool_invocations]),
                    _redact_md(solution.review.markdown),
                    s.one_liner,
                    s.rationale,
                ),
            )
            return bool(cur.rowcount)

    def recent(self, *, repo_owner: str, repo_name: str, limit: int = 10) -> List[Dict[str, Any]]:
        with self.db.reader() as con:
            rows = con.execute(
                """
                SELECT * FROM fix_recommendations
                 WHERE repo_owner=? AND repo_name=?
                 ORDER BY created_at DESC, id DESC
                 LIMIT ?
                """,
                (repo_owner, repo_name, int(limit)),
            ).fetchall()
        out: List[Dict[str, Any]] = []
        for r in rows:
            d = dict(r)
            d["summary"] = _safe_json(d.pop("summary_json", None))
            d["changes"] = _safe_json(d.pop("changes_json", None))
            d["policy"] = _safe_json(d.pop("policy_json", None))
            d["tool_invocations"] = _safe_json(d.pop("tool_inv_json", None))
            out.append(d)
        return out

    def mark_applied(self, failure_id: int) -> None:
        """Recorded after a human confirms the suggestion was applied."""
        with self.db.transaction() as con:
            con.execute("UPDATE build_failures SET status='applied' WHERE failure_id=?", (failure_id,))


class SimilarityRetriever(Protocol):
    def similar_solutions(self, *, repo_owner: str, repo_name: str, query: str, limit: int = 5) -> List[SimilarSolution]: ...


_TOKEN_RE = re.compile(r"[a-z0-9_]{3,}")


def _tokens(s: str) -> set[str]:
    return set(_TOKEN_RE.findall((s or "").lower()))


@dataclass(frozen=True)
class LexicalRetriever:
    """
    Default prior-solution lookup: token-set Jaccard similarity between the query and each
    recommendation's summary/rationale/replacement text, restricted to the same repository.
    """

    db: Database
    scan_limit: int = 200
    min_similarity: float = 0.0

    def similar_solutions(self, *, repo_owner: str, repo_name: str, query: str, limit: int = 5) -> List[SimilarSolution]:
        q = _tokens(query)
        if not q:
            return []
        with self.db.reader() as con:
            rows = con.execute(
                """
                SELECT id, failure_id, pr_number, head_sha, summary_one_liner, rationale, changes_json
                  FROM fix_recommendations
                 WHERE repo_owner=? AND repo_name=?
                 ORDER BY created_at DESC, id DESC
                 LIMIT ?
                """,
                (repo_owner, repo_name, int(self.scan_limit)),
            ).fetchall()
        scored: List[SimilarSolution] = []
        for r in rows:
            changes = _safe_json(r["changes_json"]) or []
            afters = " ".join(str(c.get("after") or "") for c in changes[:3] if isinstance(c, dict))
            doc = _tokens(" ".join([r["summary_one_liner"] or "", r["rationale"] or "", afters]))
            if not doc:
                continue
            sim = len(q & doc) / len(q | doc)
            if sim < self.min_similarity:
                continue
            scored.append(
                SimilarSolution(
                    id=int(r["id"]),
                    failure_id=r["failure_id"],
                    pr_number=r["pr_number"],
                    head_sha=r["head_sha"],
                    summary_one_liner=r["summary_one_liner"],
                    rationale=r["rationale"],
                    similarity=round(sim, 4),
                )
            )
        scored.sort(key=lambda x: x.similarity, reverse=True)
        return scored[:limit]
