from __future__ import annotations

import sqlite3
import threading

import pytest

from citriage.errors import ClaimError
from citriage.models import FailureStatus
from citriage.pipeline.claimer import WorkClaimer
from citriage.store.db import Database
from citriage.store.failures import FailureRepository


def _seed(db: Database, n: int) -> list[int]:
    repo = FailureRepository(db)
    return [
        int(repo.log_build_failure(repo_owner="o", repo_name="r", commit_sha=f"sha{i}", pr_number=i + 1, run_id=f"run-{i}"))
        for i in range(n)
    ]


def test_claim_returns_none_when_idle(db: Database) -> None:
    assert WorkClaimer(db).claim() is None


def test_claims_oldest_first_and_marks_analyzing(db: Database) -> None:
    ids = _seed(db, 3)
    claimer = WorkClaimer(db)
    first = claimer.claim()
    second = claimer.claim()
    assert first is not None and second is not None
    assert [first.failure_id, second.failure_id] == ids[:2]
    assert first.status == FailureStatus.analyzing
    assert FailureRepository(db).get(ids[0]).status == FailureStatus.analyzing
    assert FailureRepository(db).get(ids[2]).status == FailureStatus.new


def test_duplicate_run_id_is_a_noop(db: Database) -> None:
    repo = FailureRepository(db)
    a = repo.log_build_failure(repo_owner="o", repo_name="r", commit_sha="s", run_id="same")
    repo.set_status(int(a), FailureStatus.proposed)
    b = repo.log_build_failure(repo_owner="o", repo_name="r", commit_sha="other", run_id="same")
    assert a == b
    assert repo.get(int(a)).status == FailureStatus.proposed


def test_concurrent_claimers_never_share_a_record(db: Database) -> None:
    pending = 5
    workers = 8
    _seed(db, pending)
    results: list[int | None] = []
    errors: list[BaseException] = []
    lock = threading.Lock()
    start = threading.Barrier(workers)

    def worker() -> None:
        claimer = WorkClaimer(db)
        start.wait()
        try:
            rec = claimer.claim()
        except ClaimError as e:
            with lock:
                errors.append(e)
            return
        with lock:
            results.append(rec.failure_id if rec else None)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    claimed = [r for r in results if r is not None]
    assert len(claimed) == min(workers, pending)
    assert len(set(claimed)) == len(claimed)
    assert results.count(None) == workers - pending


def test_claim_failure_is_surfaced(db: Database, monkeypatch: pytest.MonkeyPatch) -> None:
    _seed(db, 1)

    def _locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "transaction", _locked)
    with pytest.raises(ClaimError):
        WorkClaimer(db).claim()
