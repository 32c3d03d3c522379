from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from citriage.errors import CollaboratorError
from citriage.llm.chat_client import ChatModel, parse_json_content
from citriage.models import Diagnosis, StructuredDiagnosis
from citriage.parsers.log_text import normalize, redact_secrets, signatures, tail_lines
from citriage.store.failures import FailureRepository
from citriage.store.knowledge import SimilarityRetriever
from citriage.telemetry.audit import AuditLogger


_SYSTEM = (
    "You are a CI failure analyst. Read the failing log tail and extract the root-cause facts. "
    "Reply with ONE JSON object and nothing else."
)

_SCHEMA_HINT = {
    "error_class": "short category, e.g. TypeError, ModuleNotFound, AssertionError, LintError",
    "message": "the single most relevant error line",
    "file_hint": "repo-relative path most likely at fault, or empty",
    "failing_test": "failing test id, or empty",
    "keywords": ["3-8 identifiers useful for code search"],
}


def _build_prompt(*, repo: str, pr_number: int | None, head_sha: str, window: str) -> str:
    return "\n".join(
        [
            f"Repository: {repo}",
            f"Pull request: #{pr_number}" if pr_number else "Pull request: (none)",
            f"Head commit: {head_sha}",
            "",
            "Return JSON with exactly these keys:",
            json.dumps(_SCHEMA_HINT, indent=2),
            "",
            "Log tail:",
            "```",
            window,
            "```",
        ]
    )


def coerce_structured(raw: Dict[str, Any], *, signature: str) -> StructuredDiagnosis:
    """Boundary normalization of the model's extraction; missing/odd fields become defaults."""
    kws = raw.get("keywords") or []
    if isinstance(kws, str):
        kws = [k.strip() for k in kws.split(",")]
    return StructuredDiagnosis(
        error_signature=signature,
        error_class=str(raw.get("error_class") or "")[:200],
        message=str(raw.get("message") or "")[:1000],
        file_hint=str(raw.get("file_hint") or "").strip().lstrip("/")[:500],
        failing_test=str(raw.get("failing_test") or "")[:500],
        keywords=[str(k)[:100] for k in kws if str(k).strip()][:12],
    )


@dataclass(frozen=True)
class DiagnosisService:
    """
    Default Diagnose step.

    Windowing, redaction and signatures are local; structured extraction goes to the chat
    model (defaults are substituted when that call fails); neighbours come from exact
    signature matches in `build_failures` and from the similarity retriever over prior
    recommendations.
    """

    llm: ChatModel
    failures: FailureRepository
    retriever: SimilarityRetriever
    audit: AuditLogger | None = None
    tail_n: int = 300
    max_prior_messages: int = 12
    max_neighbours: int = 5

    def diagnose(
        self,
        *,
        repo_owner: str,
        repo_name: str,
        pr_number: int | None,
        head_sha: str,
        log_window: str,
        prior_messages: List[Dict[str, Any]],
        failure_id: int | None = None,
        correlation_id: str = "diagnosis",
    ) -> Diagnosis:
        window = redact_secrets(tail_lines(log_window, self.tail_n))
        norm_tail = normalize(window)
        sig_v1, sig_v2 = signatures(norm_tail)
        repo = f"{repo_owner}/{repo_name}"

        prompt = _build_prompt(repo=repo, pr_number=pr_number, head_sha=head_sha, window=window)
        user_msg = {"role": "user", "content": prompt}
        raw: Dict[str, Any] = {}
        reply: Optional[str] = None
        try:
            msg = self.llm.complete(
                messages=[{"role": "system", "content": _SYSTEM}, *prior_messages, user_msg],
                json_mode=True,
            )
            reply = str(msg.get("content") or "")
            raw = parse_json_content(reply)
        except (RuntimeError, ValueError, httpx.HTTPError) as e:
            self._audit(correlation_id, "diagnosis.extract_failed", {"error": str(e)[:500]})
        structured = coerce_structured(raw, signature=sig_v1 or "")

        try:
            similar_failures = self.failures.similar_by_signature(
                repo_owner=repo_owner,
                repo_name=repo_name,
                signature_v1=sig_v1,
                signature_v2=sig_v2,
                exclude_failure_id=failure_id,
                limit=self.max_neighbours,
            )
            query = " ".join([structured.error_class, structured.message, *structured.keywords]).strip() or norm_tail[-2000:]
            similar_solutions = self.retriever.similar_solutions(
                repo_owner=repo_owner, repo_name=repo_name, query=query, limit=self.max_neighbours
            )
        except sqlite3.Error as e:
            raise CollaboratorError(f"diagnosis_retrieval_failed: {e}") from e

        messages = [*prior_messages, user_msg]
        if reply:
            messages.append({"role": "assistant", "content": reply})
        if len(messages) > self.max_prior_messages:
            messages = messages[-self.max_prior_messages :]

        self._audit(
            correlation_id,
            "diagnosis.completed",
            {
                "failure_id": failure_id,
                "error_class": structured.error_class,
                "signature_v1": sig_v1,
                "similar_failures": [f.failure_id for f in similar_failures],
                "similar_solutions": [s.id for s in similar_solutions],
            },
        )
        return Diagnosis(
            window=window,
            structured=structured,
            similar_failures=similar_failures,
            similar_solutions=similar_solutions,
            messages=messages,
        )

    def _audit(self, correlation_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        if self.audit is not None:
            self.audit.write(correlation_id, event_type, payload)
