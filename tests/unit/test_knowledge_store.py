from __future__ import annotations

from citriage.models import (
    Change,
    ChangeType,
    FailureStatus,
    PolicyDecision,
    ReviewArtifacts,
    SolutionResult,
    SolutionSummary,
)
from citriage.store.db import Database
from citriage.store.failures import FailureRepository
from citriage.store.knowledge import KnowledgeStore, LexicalRetriever


def _solution(one_liner: str, rationale: str, after: str = "x = 1") -> SolutionResult:
    return SolutionResult(
        summary=SolutionSummary(one_liner=one_liner, rationale=rationale, confidence=0.7),
        changes=[Change(path="a.py", anchor_line=1, after=after, type=ChangeType.fix)],
        policy=PolicyDecision(auto_suggestion_eligible=False, reason="confidence"),
        review=ReviewArtifacts(markdown="**Review** TOKEN=abcdefghijkl"),
    )


def _failure(db: Database, run_id: str) -> int:
    return int(FailureRepository(db).log_build_failure(repo_owner="acme", repo_name="web", commit_sha="h1", pr_number=3, run_id=run_id))


def test_record_is_idempotent_and_marks_proposed(db: Database) -> None:
    fid = _failure(db, "r1")
    ks = KnowledgeStore(db)
    kwargs = dict(failure_id=fid, repo_owner="acme", repo_name="web", pr_number=3, head_sha="h1")
    assert ks.record_solution_artifacts(**kwargs, solution=_solution("Fix import", "missing module")) is True
    assert ks.record_solution_artifacts(**kwargs, solution=_solution("Other", "other")) is False
    assert FailureRepository(db).get(fid).status == FailureStatus.proposed

    rows = ks.recent(repo_owner="acme", repo_name="web")
    assert len(rows) == 1
    assert rows[0]["summary_one_liner"] == "Fix import"
    assert rows[0]["changes"][0]["path"] == "a.py"
    assert rows[0]["policy"]["auto_suggestion_eligible"] is False
    assert "abcdefghijkl" not in rows[0]["summary_md"]


def test_mark_applied(db: Database) -> None:
    fid = _failure(db, "r2")
    KnowledgeStore(db).mark_applied(fid)
    assert FailureRepository(db).get(fid).status == FailureStatus.applied


def test_lexical_retriever_ranks_by_overlap(db: Database) -> None:
    ks = KnowledgeStore(db)
    a = _failure(db, "ra")
    b = _failure(db, "rb")
    ks.record_solution_artifacts(
        failure_id=a, repo_owner="acme", repo_name="web", pr_number=3, head_sha="h1",
        solution=_solution("Install missing requests module", "ModuleNotFoundError requests", after="requests==2.31"),
    )
    ks.record_solution_artifacts(
        failure_id=b, repo_owner="acme", repo_name="web", pr_number=3, head_sha="h2",
        solution=_solution("Fix flaky timeout", "test timed out waiting for server"),
    )
    hits = LexicalRetriever(db).similar_solutions(
        repo_owner="acme", repo_name="web", query="ModuleNotFoundError: No module named requests"
    )
    assert hits[0].failure_id == a
    assert hits[0].similarity > hits[-1].similarity
    assert LexicalRetriever(db).similar_solutions(repo_owner="acme", repo_name="other", query="requests") == []
    assert LexicalRetriever(db).similar_solutions(repo_owner="acme", repo_name="web", query="") == []
