from __future__ import annotations

import random
import time
from typing import Callable, Optional, TypeVar

import httpx


T = TypeVar("T")

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def compute_backoff(
    attempt: int,
    *,
    base_s: float = 1.0,
    jitter_s: float = 0.25,
    rng: Optional[random.Random] = None,
) -> float:
    """Delay before retry number `attempt` (1-based): base * 2^(attempt-1) plus uniform jitter."""
    n = max(1, int(attempt))
    jitter = (rng or random).uniform(0.0, jitter_s) if jitter_s > 0 else 0.0
    return base_s * (2 ** (n - 1)) + jitter


def is_transient_http_error(exc: BaseException, *, retry_not_found: bool = True) -> bool:
    """
    Classify errors worth retrying on the log-download path: rate limits, server errors,
    timeouts and dropped connections. A 404 right after a run completes usually means the
    log archive is not published yet, so it is retried unless `retry_not_found` is off.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in TRANSIENT_STATUS_CODES:
            return True
        return retry_not_found and status == 404
    if isinstance(
        exc,
        (
            httpx.TimeoutException,
            httpx.ConnectError,
            httpx.ReadError,
            httpx.RemoteProtocolError,
        ),
    ):
        return True
    if isinstance(exc, (ConnectionResetError, TimeoutError)):
        return True
    return False


def with_retry(
    fn: Callable[[], T],
    *,
    is_retryable: Callable[[BaseException], bool],
    max_attempts: int = 3,
    backoff: Callable[[int], float] = compute_backoff,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> T:
    """
    Call `fn` until it succeeds, a non-retryable error is raised, or `max_attempts` is spent.
    The last error propagates unchanged.
    """
    attempts = max(1, int(max_attempts))
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as e:  # noqa: BLE001 (classified below, re-raised when terminal)
            if attempt >= attempts or not is_retryable(e):
                raise
            delay = backoff(attempt)
            if on_retry is not None:
                on_retry(attempt, e, delay)
            sleep(delay)
    raise AssertionError("unreachable")
