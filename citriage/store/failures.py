from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import List, Optional

from citriage.models import FailureRecord, FailureStatus, SimilarFailure
from citriage.store.db import Database


def row_to_failure(r: sqlite3.Row) -> FailureRecord:
    return FailureRecord(
        failure_id=int(r["failure_id"]),
        run_id=r["run_id"],
        repo_owner=str(r["repo_owner"]),
        repo_name=str(r["repo_name"]),
        pr_number=r["pr_number"],
        commit_sha=str(r["commit_sha"]),
        installation_id=r["installation_id"],
        log_content=r["log_content"],
        norm_tail=r["norm_tail"],
        error_signature_v1=r["error_signature_v1"],
        error_signature_v2=r["error_signature_v2"],
        status=FailureStatus(str(r["status"])),
        failure_timestamp=r["failure_timestamp"],
    )


@dataclass(frozen=True)
class FailureRepository:
    db: Database

    def log_build_failure(
        self,
        *,
        repo_owner: str,
        repo_name: str,
        commit_sha: str,
        log_content: str = "",
        pr_number: int | None = None,
        run_id: str | None = None,
        installation_id: int | None = None,
    ) -> Optional[int]:
        """
        Insert a `new` failure record. A duplicate external run id is a no-op that keeps the
        existing row (and its status) untouched; returns the existing id in that case.
        """
        with self.db.transaction() as con:
            cur = con.execute(
                """
                INSERT INTO build_failures
                    (run_id, repo_owner, repo_name, pr_number, commit_sha, log_content, installation_id, status)
                VALUES (?,?,?,?,?,?,?,'new')
                ON CONFLICT(run_id) DO NOTHING
                """,
                (run_id, repo_owner, repo_name, pr_number, commit_sha, log_content, installation_id),
            )
            if cur.rowcount:
                return int(cur.lastrowid)
            row = con.execute("SELECT failure_id FROM build_failures WHERE run_id=?", (run_id,)).fetchone()
        return int(row["failure_id"]) if row else None

    def get(self, failure_id: int) -> Optional[FailureRecord]:
        with self.db.reader() as con:
            row = con.execute("SELECT * FROM build_failures WHERE failure_id=?", (failure_id,)).fetchone()
        return row_to_failure(row) if row else None

    def set_status(self, failure_id: int, status: FailureStatus) -> None:
        with self.db.transaction() as con:
            con.execute("UPDATE build_failures SET status=? WHERE failure_id=?", (status.value, failure_id))

    def update_log(
        self,
        failure_id: int,
        *,
        log_content: str,
        norm_tail: str | None,
        error_signature_v1: str | None,
        error_signature_v2: str | None,
    ) -> None:
        # Signatures already on the row (e.g. computed at ingestion) win over fresh ones.
        with self.db.transaction() as con:
            con.execute(
                """
                UPDATE build_failures
                   SET log_content=?,
                       norm_tail=?,
                       error_signature_v1=COALESCE(error_signature_v1, ?),
                       error_signature_v2=COALESCE(error_signature_v2, ?)
                 WHERE failure_id=?
                """,
                (log_content, norm_tail, error_signature_v1, error_signature_v2, failure_id),
            )

    def similar_by_signature(
        self,
        *,
        repo_owner: str,
        repo_name: str,
        signature_v1: str | None,
        signature_v2: str | None,
        exclude_failure_id: int | None = None,
        limit: int = 5,
    ) -> List[SimilarFailure]:
        """Exact-signature neighbours, newest first: v1 matches, then v2, de-duplicated."""
        out: List[SimilarFailure] = []
        seen: set[int] = set()
        with self.db.reader() as con:
            for column, sig, tag in (
                ("error_signature_v1", signature_v1, "v1"),
                ("error_signature_v2", signature_v2, "v2"),
            ):
                if not sig:
                    continue
                rows = con.execute(
                    f"""
                    SELECT failure_id, pr_number, commit_sha, failure_timestamp,
                           error_signature_v1, error_signature_v2
                      FROM build_failures
                     WHERE repo_owner=? AND repo_name=? AND {column}=? AND failure_id != ?
                     ORDER BY failure_timestamp DESC, failure_id DESC
                     LIMIT ?
                    """,
                    (repo_owner, repo_name, sig, exclude_failure_id or -1, int(limit)),
                ).fetchall()
                for r in rows:
                    fid = int(r["failure_id"])
                    if fid in seen:
                        continue
                    seen.add(fid)
                    out.append(
                        SimilarFailure(
                            failure_id=fid,
                            pr_number=r["pr_number"],
                            commit_sha=str(r["commit_sha"]),
                            failure_timestamp=r["failure_timestamp"],
                            error_signature_v1=r["error_signature_v1"],
                            error_signature_v2=r["error_signature_v2"],
                            match_on=tag,
                        )
                    )
        return out[:limit]
