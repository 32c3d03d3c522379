from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS build_failures (
        failure_id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT UNIQUE,
        repo_owner TEXT NOT NULL,
        repo_name TEXT NOT NULL,
        pr_number INTEGER,
        commit_sha TEXT NOT NULL,
        installation_id INTEGER,
        log_content TEXT,
        error_signature_v1 TEXT,
        error_signature_v2 TEXT,
        norm_tail TEXT,
        status TEXT NOT NULL DEFAULT 'new'
            CHECK (status IN ('new','analyzing','proposed','applied','skipped')),
        failure_timestamp TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_bf_status_time ON build_failures (status, failure_timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_bf_repo_sig1 ON build_failures (repo_owner, repo_name, error_signature_v1)",
    "CREATE INDEX IF NOT EXISTS idx_bf_repo_sig2 ON build_failures (repo_owner, repo_name, error_signature_v2)",
    """
    CREATE TABLE IF NOT EXISTS outbound_actions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        action_hash TEXT NOT NULL UNIQUE,
        action_type TEXT NOT NULL CHECK (action_type IN ('pr_review')),
        repo_owner TEXT NOT NULL,
        repo_name TEXT NOT NULL,
        pull_number INTEGER NOT NULL,
        head_sha TEXT NOT NULL,
        installation_id INTEGER,
        payload_json TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'staged'
            CHECK (status IN ('staged','dispatching','dispatched','error')),
        attempt_count INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        dispatched_at TEXT,
        github_response_json TEXT,
        created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_oa_status ON outbound_actions (status, id)",
    """
    CREATE TABLE IF NOT EXISTS fix_recommendations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        failure_id INTEGER,
        repo_owner TEXT NOT NULL,
        repo_name TEXT NOT NULL,
        pr_number INTEGER,
        head_sha TEXT,
        summary_json TEXT,
        changes_json TEXT,
        policy_json TEXT,
        tool_inv_json TEXT,
        summary_md TEXT,
        summary_one_liner TEXT,
        rationale TEXT,
        created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now')),
        UNIQUE (failure_id, head_sha)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_fr_repo_time ON fix_recommendations (repo_owner, repo_name, created_at)",
)


class Database:
    """
    Explicit handle on the relational store. Constructed once at process start and passed
    into every component; each operation opens its own short-lived connection.

    Connections run in autocommit mode (`isolation_level=None`) so that transactions are
    always explicit: `transaction()` for ordinary writes, `transaction(immediate=True)` when
    the write lock must be held from the first read (exclusive claims).
    """

    def __init__(self, *, db_path: str, timeout_s: float = 10.0) -> None:
        self.db_path = db_path
        self.timeout_s = timeout_s
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._init_db()

    def connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(self.db_path, timeout=self.timeout_s, isolation_level=None)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys=ON")
        return con

    def _init_db(self) -> None:
        con = self.connect()
        try:
            con.execute("PRAGMA journal_mode=WAL")
            for stmt in _SCHEMA:
                con.execute(stmt)
        finally:
            con.close()

    @contextmanager
    def transaction(self, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        con = self.connect()
        try:
            con.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield con
            except BaseException:
                con.execute("ROLLBACK")
                raise
            con.execute("COMMIT")
        finally:
            con.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        con = self.connect()
        try:
            yield con
        finally:
            con.close()
