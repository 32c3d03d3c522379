from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CITRIAGE_", extra="ignore")

    # Persistence
    db_path: str = "var/citriage.sqlite3"
    audit_log_path: str = "var/audit/citriage_audit.jsonl"

    # Shared secret expected as `Authorization: Bearer <secret>` on the trigger endpoints.
    cron_secret: str | None = None

    # GitHub
    github_api_base: str = "https://api.github.com"
    github_timeout_s: float = 15.0
    # Static token (PAT or pre-minted installation token). Used when no app token is configured.
    github_token: str | None = None
    # Pre-minted GitHub App JWT; enables per-installation token exchange.
    github_app_jwt: str | None = None

    # OpenAI-compatible chat completions API
    llm_api_key: str | None = None
    llm_base_url: str = "https://openrouter.ai/api/v1"
    llm_model: str = "openai/gpt-4o-mini"
    llm_timeout_s: float = 20.0
    llm_max_tokens: int = 2048
    # Retries stay off by default: a failed model call ends the current loop iteration.
    llm_max_retries: int = 1

    # Insight loop
    confidence_tau: float = 0.80
    max_loops: int = 3
    analysis_tail_lines: int = 300
    solve_tail_lines: int = 150
    max_prior_messages: int = 12

    # Tool budgets for one Solve invocation
    tool_max_calls: int = 6
    tool_max_ms: int = 10_000
    tool_max_calls_per_tool: int = 3
    tool_max_ms_per_tool: int = 5_000
    fetch_slice_default_span: int = 80

    # Review rendering / outbox
    review_max_comments: int = 12
    review_body_max_bytes: int = 18_000
    dispatch_batch_size: int = 5
    dispatch_max_batch: int = 50
    dispatch_error_max_chars: int = 1000

    # Log download + archive extraction
    log_max_retries: int = 3
    log_retry_base_s: float = 1.0
    log_retry_jitter_s: float = 0.25
    log_archive_max_files: int = 40
    log_archive_tail_bytes_per_file: int = 200_000
    log_archive_max_combined_bytes: int = 2_000_000
    log_tail_lines: int = 800
    norm_tail_lines: int = 300
