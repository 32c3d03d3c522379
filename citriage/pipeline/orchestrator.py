from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from citriage.errors import OutboxError
from citriage.models import Diagnosis, FailureRecord, FailureStatus, RunOutcome, SolutionResult
from citriage.outbox.stager import OutboxStager
from citriage.store.failures import FailureRepository
from citriage.store.knowledge import KnowledgeStore
from citriage.telemetry.audit import AuditLogger


class Diagnoser(Protocol):
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
        correlation_id: str = ...,
    ) -> Diagnosis: ...


class Solver(Protocol):
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
        correlation_id: str = ...,
    ) -> SolutionResult: ...


class LoopState(str, Enum):
    diagnose = "diagnose"
    solve = "solve"
    decide = "decide"
    act = "act"
    persist = "persist"
    done = "done"


@dataclass
class RunContext:
    """Mutable state of one run. Discarded when the run aborts."""

    failure: FailureRecord
    correlation_id: str
    messages: List[Dict[str, Any]] = field(default_factory=list)
    diagnosis: Optional[Diagnosis] = None
    solution: Optional[SolutionResult] = None
    confidence: float = 0.0
    loop_count: int = 0
    action_hash: Optional[str] = None
    trace: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class InsightLoopOrchestrator:
    """
    Diagnose → Solve → Decide → (Diagnose | Act) → Persist → Done.

    Decide moves on to Act once confidence reaches `tau` or `max_loops` solves have run;
    otherwise the run re-enters Diagnose with the accumulated conversation. Any error in a
    step aborts the run and marks the failure `skipped`.
    """

    diagnoser: Diagnoser
    solver: Solver
    stager: OutboxStager
    knowledge: KnowledgeStore
    failures: FailureRepository
    audit: AuditLogger | None = None
    tau: float = 0.80
    max_loops: int = 3

    def run(self, failure: FailureRecord, *, correlation_id: str | None = None) -> RunOutcome:
        cid = correlation_id or (self.audit.new_correlation_id() if self.audit else f"failure-{failure.failure_id}")
        ctx = RunContext(failure=failure, correlation_id=cid)
        state = LoopState.diagnose
        self._audit(cid, "run.started", {"failure_id": failure.failure_id, "repo": f"{failure.repo_owner}/{failure.repo_name}"})
        try:
            while state != LoopState.done:
                nxt = self.step(state, ctx)
                ctx.trace.append(f"{state.value}->{nxt.value}")
                self._audit(
                    cid,
                    "run.transition",
                    {"failure_id": failure.failure_id, "from": state.value, "to": nxt.value, "loop": ctx.loop_count, "confidence": ctx.confidence},
                )
                state = nxt
        except Exception as e:  # noqa: BLE001 (every step failure aborts the run into `skipped`)
            err = f"{type(e).__name__}: {e}"
            self._mark_skipped(ctx, err)
            return RunOutcome(
                failure_id=failure.failure_id,
                ok=False,
                loops=ctx.loop_count,
                final_state=state.value,
                trace=ctx.trace,
                error=err[:1000],
            )

        self._audit(
            cid,
            "run.completed",
            {"failure_id": failure.failure_id, "loops": ctx.loop_count, "confidence": ctx.confidence, "action_hash": ctx.action_hash},
        )
        return RunOutcome(
            failure_id=failure.failure_id,
            ok=True,
            loops=ctx.loop_count,
            final_state=state.value,
            action_hash=ctx.action_hash,
            confidence=ctx.confidence,
            trace=ctx.trace,
        )

    def step(self, state: LoopState, ctx: RunContext) -> LoopState:
        f = ctx.failure
        if state == LoopState.diagnose:
            ctx.diagnosis = self.diagnoser.diagnose(
                repo_owner=f.repo_owner,
                repo_name=f.repo_name,
                pr_number=f.pr_number,
                head_sha=f.commit_sha,
                log_window=f.log_content or "",
                prior_messages=ctx.messages,
                failure_id=f.failure_id,
                correlation_id=ctx.correlation_id,
            )
            ctx.messages = list(ctx.diagnosis.messages)
            return LoopState.solve

        if state == LoopState.solve:
            if ctx.diagnosis is None:
                raise ValueError("solve reached without a diagnosis")
            ctx.solution = self.solver.solve(
                repo_owner=f.repo_owner,
                repo_name=f.repo_name,
                pr_number=f.pr_number,
                head_sha=f.commit_sha,
                log_window=f.log_content or "",
                diagnosis=ctx.diagnosis,
                installation_id=f.installation_id,
                correlation_id=ctx.correlation_id,
            )
            ctx.confidence = ctx.solution.confidence
            ctx.loop_count += 1
            return LoopState.decide

        if state == LoopState.decide:
            if ctx.confidence >= self.tau or ctx.loop_count >= self.max_loops:
                return LoopState.act
            return LoopState.diagnose

        if state == LoopState.act:
            if ctx.solution is None:
                raise ValueError("act reached without a solution")
            res = self.stager.stage(
                owner=f.repo_owner,
                repo=f.repo_name,
                pr_number=f.pr_number,
                head_sha=f.commit_sha,
                solution=ctx.solution,
                installation_id=f.installation_id,
                correlation_id=ctx.correlation_id,
            )
            if not res.ok:
                raise OutboxError(res.error or "stage_failed")
            ctx.action_hash = res.action_hash
            return LoopState.persist

        if state == LoopState.persist:
            if ctx.solution is None:
                raise ValueError("persist reached without a solution")
            self.knowledge.record_solution_artifacts(
                failure_id=f.failure_id,
                repo_owner=f.repo_owner,
                repo_name=f.repo_name,
                pr_number=f.pr_number,
                head_sha=f.commit_sha,
                solution=ctx.solution,
            )
            return LoopState.done

        raise ValueError(f"no transition out of {state.value}")

    def _mark_skipped(self, ctx: RunContext, error: str) -> None:
        payload: Dict[str, Any] = {"failure_id": ctx.failure.failure_id, "loops": ctx.loop_count, "error": error[:1000]}
        try:
            self.failures.set_status(ctx.failure.failure_id, FailureStatus.skipped)
        except sqlite3.Error as e:
            payload["status_update_error"] = str(e)[:300]
        self._audit(ctx.correlation_id, "run.failed", payload)

    def _audit(self, correlation_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        if self.audit is not None:
            self.audit.write(correlation_id, event_type, payload)
