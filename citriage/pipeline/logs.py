from __future__ import annotations

import io
import time
import zipfile
import zlib
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from citriage.errors import GitHubAuthError, LogDownloadError
from citriage.gitops.github_rest import GitHubRestClient
from citriage.models import FailureRecord
from citriage.parsers.log_text import norm_tail, signatures, tail_lines
from citriage.pipeline.retry import compute_backoff, is_transient_http_error, with_retry
from citriage.store.failures import FailureRepository
from citriage.telemetry.audit import AuditLogger


RUN_EVENTS = ("pull_request", "pull_request_target")


def find_latest_run(
    gh: GitHubRestClient, *, owner: str, repo: str, pr_number: int, head_sha: str
) -> Optional[Dict[str, Any]]:
    """Newest workflow run for (PR, head commit) across both pull-request event kinds."""
    candidates: List[Dict[str, Any]] = []
    for event in RUN_EVENTS:
        for run in gh.list_workflow_runs(owner=owner, repo=repo, event=event, head_sha=head_sha):
            if run.get("head_sha") != head_sha:
                continue
            prs = run.get("pull_requests") or []
            if any(int(p.get("number") or 0) == int(pr_number) for p in prs):
                candidates.append(run)
    if not candidates:
        return None
    # ISO-8601 timestamps sort lexicographically
    candidates.sort(key=lambda r: str(r.get("run_started_at") or r.get("created_at") or ""), reverse=True)
    return candidates[0]


def extract_log_archive(
    data: bytes,
    *,
    max_files: int = 40,
    tail_bytes_per_file: int = 200_000,
    max_combined_bytes: int = 2_000_000,
) -> str:
    """
    Concatenate the `.txt` members of a run-log archive. Each member contributes at most its
    last `tail_bytes_per_file` bytes; reading stops at `max_files` members or once the
    combined size reaches `max_combined_bytes`.
    """
    parts: List[str] = []
    combined = 0
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        for info in zf.infolist():
            if info.is_dir() or not info.filename.endswith(".txt"):
                continue
            if len(parts) >= max_files or combined >= max_combined_bytes:
                break
            raw = zf.read(info)
            chunk = raw[-tail_bytes_per_file:] if len(raw) > tail_bytes_per_file else raw
            combined += len(chunk)
            parts.append(f"==> {info.filename} <==\n" + chunk.decode("utf-8", errors="replace"))
    return "\n".join(parts)


@dataclass(frozen=True)
class LogCollector:
    """
    Fetches the failing run's logs for a claimed record and backfills `log_content`,
    `norm_tail` and both signatures. Only the download is retried.
    """

    failures: FailureRepository
    client_for: Callable[[str, str, Optional[int]], GitHubRestClient]
    audit: AuditLogger | None = None
    max_attempts: int = 3
    retry_base_s: float = 1.0
    retry_jitter_s: float = 0.25
    max_files: int = 40
    tail_bytes_per_file: int = 200_000
    max_combined_bytes: int = 2_000_000
    tail_n: int = 800
    norm_tail_n: int = 300
    retry_not_found: bool = True
    sleep: Callable[[float], None] = time.sleep

    def collect(self, failure: FailureRecord, *, correlation_id: str = "logs") -> FailureRecord:
        if failure.pr_number:
            text = self._download(failure, correlation_id)
        else:
            # Nothing to look up without a PR; work from whatever ingestion stored.
            text = failure.log_content or ""
        tailed = tail_lines(text, self.tail_n)
        norm = norm_tail(text, self.norm_tail_n)
        sig_v1, sig_v2 = signatures(norm)
        self.failures.update_log(
            failure.failure_id,
            log_content=tailed,
            norm_tail=norm or None,
            error_signature_v1=sig_v1,
            error_signature_v2=sig_v2,
        )
        fresh = self.failures.get(failure.failure_id)
        self._audit(
            correlation_id,
            "logs.collected",
            {"failure_id": failure.failure_id, "lines": tailed.count("\n") + 1 if tailed else 0, "signature_v1": sig_v1},
        )
        return fresh or failure

    def _download(self, failure: FailureRecord, correlation_id: str) -> str:
        owner, repo = failure.repo_owner, failure.repo_name
        try:
            gh = self.client_for(owner, repo, failure.installation_id)
            run = find_latest_run(gh, owner=owner, repo=repo, pr_number=int(failure.pr_number or 0), head_sha=failure.commit_sha)
        except (GitHubAuthError, httpx.HTTPError) as e:
            raise LogDownloadError(f"run_lookup_failed: {e}") from e
        if run is None:
            raise LogDownloadError(f"no workflow run for {owner}/{repo}#{failure.pr_number} @ {failure.commit_sha}")

        try:
            run_id = int(run["id"])
        except (KeyError, TypeError, ValueError) as e:
            raise LogDownloadError(f"malformed_workflow_run: {e!r}") from e

        def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            self._audit(
                correlation_id,
                "logs.download_retry",
                {"failure_id": failure.failure_id, "run_id": run_id, "attempt": attempt, "delay_s": round(delay, 3), "error": str(exc)[:300]},
            )

        try:
            data = with_retry(
                lambda: gh.download_run_logs(owner=owner, repo=repo, run_id=run_id),
                is_retryable=lambda e: is_transient_http_error(e, retry_not_found=self.retry_not_found),
                max_attempts=self.max_attempts,
                backoff=lambda attempt: compute_backoff(attempt, base_s=self.retry_base_s, jitter_s=self.retry_jitter_s),
                sleep=self.sleep,
                on_retry=_on_retry,
            )
        except (httpx.HTTPError, OSError) as e:
            raise LogDownloadError(f"log_download_failed: {e}") from e
        try:
            return extract_log_archive(
                data,
                max_files=self.max_files,
                tail_bytes_per_file=self.tail_bytes_per_file,
                max_combined_bytes=self.max_combined_bytes,
            )
        except (zipfile.BadZipFile, zlib.error, NotImplementedError, RuntimeError, EOFError) as e:
            raise LogDownloadError(f"bad_log_archive: {e}") from e

    def _audit(self, correlation_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        if self.audit is not None:
            self.audit.write(correlation_id, event_type, payload)
