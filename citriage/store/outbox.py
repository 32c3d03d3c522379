from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import List, Optional

from citriage.models import ActionStatus, OutboundAction
from citriage.store.db import Database


def row_to_action(r: sqlite3.Row) -> OutboundAction:
    return OutboundAction(
        id=int(r["id"]),
        action_hash=str(r["action_hash"]),
        action_type=str(r["action_type"]),
        repo_owner=str(r["repo_owner"]),
        repo_name=str(r["repo_name"]),
        pull_number=int(r["pull_number"]),
        head_sha=str(r["head_sha"]),
        installation_id=r["installation_id"],
        payload_json=str(r["payload_json"]),
        status=ActionStatus(str(r["status"])),
        attempt_count=int(r["attempt_count"] or 0),
        last_error=r["last_error"],
        dispatched_at=r["dispatched_at"],
        created_at=r["created_at"],
    )


@dataclass(frozen=True)
class OutboxRepository:
    """`outbound_actions` rows. Rows are never deleted; status moves staged → dispatching → dispatched|error."""

    db: Database

    def insert(
        self,
        *,
        action_hash: str,
        action_type: str,
        repo_owner: str,
        repo_name: str,
        pull_number: int,
        head_sha: str,
        installation_id: int | None,
        payload_json: str,
    ) -> bool:
        """Returns False when a row with the same hash already exists (raises for any other failure)."""
        try:
            with self.db.transaction() as con:
                con.execute(
                    """
                    INSERT INTO outbound_actions
                        (action_hash, action_type, repo_owner, repo_name, pull_number, head_sha,
                         installation_id, payload_json, status)
                    VALUES (?,?,?,?,?,?,?,?,'staged')
                    """,
                    (action_hash, action_type, repo_owner, repo_name, pull_number, head_sha, installation_id, payload_json),
                )
        except sqlite3.IntegrityError as e:
            if "outbound_actions.action_hash" in str(e):
                return False
            raise
        return True

    def get_by_hash(self, action_hash: str) -> Optional[OutboundAction]:
        with self.db.reader() as con:
            row = con.execute("SELECT * FROM outbound_actions WHERE action_hash=?", (action_hash,)).fetchone()
        return row_to_action(row) if row else None

    def get(self, action_id: int) -> Optional[OutboundAction]:
        with self.db.reader() as con:
            row = con.execute("SELECT * FROM outbound_actions WHERE id=?", (action_id,)).fetchone()
        return row_to_action(row) if row else None

    def list_staged(self, limit: int) -> List[OutboundAction]:
        with self.db.reader() as con:
            rows = con.execute(
                "SELECT * FROM outbound_actions WHERE status='staged' ORDER BY created_at ASC, id ASC LIMIT ?",
                (int(limit),),
            ).fetchall()
        return [row_to_action(r) for r in rows]

    def try_lease(self, action_id: int) -> bool:
        """Compare-and-set staged → dispatching; False when another dispatcher got there first."""
        with self.db.transaction() as con:
            cur = con.execute(
                "UPDATE outbound_actions SET status='dispatching' WHERE id=? AND status='staged'", (action_id,)
            )
            return cur.rowcount == 1

    def mark_dispatched(self, action_id: int, *, response_json: str) -> None:
        with self.db.transaction() as con:
            con.execute(
                """
                UPDATE outbound_actions
                   SET status='dispatched',
                       last_error=NULL,
                       dispatched_at=strftime('%Y-%m-%dT%H:%M:%f','now'),
                       github_response_json=?
                 WHERE id=?
                """,
                (response_json, action_id),
            )

    def mark_error(self, action_id: int, *, error: str) -> None:
        with self.db.transaction() as con:
            con.execute(
                """
                UPDATE outbound_actions
                   SET status='error',
                       attempt_count=attempt_count + 1,
                       last_error=?
                 WHERE id=?
                """,
                (error, action_id),
            )
