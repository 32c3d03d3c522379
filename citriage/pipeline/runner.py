from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Optional

import httpx

from citriage.agents.budget import BudgetLimits
from citriage.agents.diagnosis import DiagnosisService
from citriage.agents.solutions import SolutionService
from citriage.errors import LogDownloadError
from citriage.gitops.auth import GitHubClientFactory
from citriage.llm.chat_client import ChatCompletionsClient, ChatModel
from citriage.models import FailureStatus, RunOutcome
from citriage.outbox.dispatcher import OutboxDispatcher
from citriage.outbox.stager import OutboxStager
from citriage.pipeline.claimer import WorkClaimer
from citriage.pipeline.logs import LogCollector
from citriage.pipeline.orchestrator import InsightLoopOrchestrator
from citriage.settings import Settings
from citriage.store.db import Database
from citriage.store.failures import FailureRepository
from citriage.store.knowledge import KnowledgeStore, LexicalRetriever
from citriage.store.outbox import OutboxRepository
from citriage.telemetry.audit import AuditLogger


@dataclass(frozen=True)
class Pipeline:
    """Every component of the service, constructed once from Settings and shared by reference."""

    settings: Settings
    db: Database
    audit: AuditLogger
    failures: FailureRepository
    knowledge: KnowledgeStore
    outbox: OutboxRepository
    claimer: WorkClaimer
    collector: LogCollector
    orchestrator: InsightLoopOrchestrator
    stager: OutboxStager
    dispatcher: OutboxDispatcher

    def process_one_pending(self, *, correlation_id: str | None = None) -> Optional[RunOutcome]:
        """
        Claim the oldest `new` failure, collect its logs, run the insight loop.
        Returns None when nothing is pending; ClaimError propagates so callers can tell
        idle from error.
        """
        failure = self.claimer.claim()
        if failure is None:
            return None
        cid = correlation_id or self.audit.new_correlation_id()
        self.audit.write(cid, "claim.acquired", {"failure_id": failure.failure_id})
        try:
            failure = self.collector.collect(failure, correlation_id=cid)
        except Exception as e:  # noqa: BLE001 (a claimed record must never stay `analyzing`)
            err = str(e) if isinstance(e, LogDownloadError) else f"{type(e).__name__}: {e}"
            payload = {"failure_id": failure.failure_id, "error": err[:1000]}
            try:
                self.failures.set_status(failure.failure_id, FailureStatus.skipped)
            except sqlite3.Error as db_err:
                payload["status_update_error"] = str(db_err)[:300]
            self.audit.write(cid, "logs.failed", payload)
            return RunOutcome(failure_id=failure.failure_id, ok=False, final_state="collect_logs", error=err[:1000])
        return self.orchestrator.run(failure, correlation_id=cid)


def build_pipeline(
    settings: Settings,
    *,
    llm: ChatModel | None = None,
    github: GitHubClientFactory | None = None,
    transport: httpx.BaseTransport | None = None,
) -> Pipeline:
    s = settings
    db = Database(db_path=s.db_path)
    audit = AuditLogger(s.audit_log_path)
    failures = FailureRepository(db)
    knowledge = KnowledgeStore(db)
    outbox = OutboxRepository(db)
    gh = github or GitHubClientFactory.from_settings(s, transport=transport)
    model = llm or ChatCompletionsClient(
        api_key=s.llm_api_key or "",
        model=s.llm_model,
        base_url=s.llm_base_url,
        timeout_s=s.llm_timeout_s,
        max_tokens=s.llm_max_tokens,
        max_retries=s.llm_max_retries,
        transport=transport,
    )
    stager = OutboxStager(outbox, audit=audit, body_max_bytes=s.review_body_max_bytes, max_comments=s.review_max_comments)
    diagnoser = DiagnosisService(
        llm=model,
        failures=failures,
        retriever=LexicalRetriever(db),
        audit=audit,
        tail_n=s.analysis_tail_lines,
        max_prior_messages=s.max_prior_messages,
    )
    solver = SolutionService(
        llm=model,
        github_for=gh.for_context,
        tau=s.confidence_tau,
        limits=BudgetLimits(
            max_calls=s.tool_max_calls,
            max_ms=s.tool_max_ms,
            max_calls_per_tool=s.tool_max_calls_per_tool,
            max_ms_per_tool=s.tool_max_ms_per_tool,
        ),
        audit=audit,
        max_comments=s.review_max_comments,
        solve_tail_lines=s.solve_tail_lines,
        default_span=s.fetch_slice_default_span,
    )
    return Pipeline(
        settings=s,
        db=db,
        audit=audit,
        failures=failures,
        knowledge=knowledge,
        outbox=outbox,
        claimer=WorkClaimer(db),
        collector=LogCollector(
            failures=failures,
            client_for=gh.for_context,
            audit=audit,
            max_attempts=s.log_max_retries,
            retry_base_s=s.log_retry_base_s,
            retry_jitter_s=s.log_retry_jitter_s,
            max_files=s.log_archive_max_files,
            tail_bytes_per_file=s.log_archive_tail_bytes_per_file,
            max_combined_bytes=s.log_archive_max_combined_bytes,
            tail_n=s.log_tail_lines,
            norm_tail_n=s.norm_tail_lines,
        ),
        orchestrator=InsightLoopOrchestrator(
            diagnoser=diagnoser,
            solver=solver,
            stager=stager,
            knowledge=knowledge,
            failures=failures,
            audit=audit,
            tau=s.confidence_tau,
            max_loops=s.max_loops,
        ),
        stager=stager,
        dispatcher=OutboxDispatcher(
            outbox,
            client_for=gh.for_context,
            audit=audit,
            default_batch=s.dispatch_batch_size,
            max_batch=s.dispatch_max_batch,
            body_max_bytes=s.review_body_max_bytes,
            error_max_chars=s.dispatch_error_max_chars,
        ),
    )
