from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Optional

from citriage.errors import ClaimError
from citriage.models import FailureRecord, FailureStatus
from citriage.store.db import Database
from citriage.store.failures import row_to_failure


@dataclass(frozen=True)
class WorkClaimer:
    """
    Atomically selects and locks exactly one pending failure record.

    The select and the status flip happen inside one `BEGIN IMMEDIATE` transaction, so the
    database write lock is held from the read onwards and two claimers can never observe
    the same `new` row. No in-process locking is involved.
    """

    db: Database

    def claim(self) -> Optional[FailureRecord]:
        try:
            with self.db.transaction(immediate=True) as con:
                row = con.execute(
                    """
                    SELECT * FROM build_failures
                     WHERE status='new'
                     ORDER BY failure_timestamp ASC, failure_id ASC
                     LIMIT 1
                    """
                ).fetchone()
                if row is None:
                    return None
                cur = con.execute(
                    "UPDATE build_failures SET status='analyzing' WHERE failure_id=? AND status='new'",
                    (row["failure_id"],),
                )
                if cur.rowcount != 1:
                    raise ClaimError(f"claim lost race for failure_id={row['failure_id']}")
        except sqlite3.Error as e:
            raise ClaimError(f"claim_failed: {e}") from e
        rec = row_to_failure(row)
        return rec.model_copy(update={"status": FailureStatus.analyzing})
