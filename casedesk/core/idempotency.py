"""
Idempotency store - makes case output submission safe to retry.

The first successful write for a key is authoritative. Later writes for the
same key are ignored and the caller gets the stored response back, exactly as
if lookup() had found it.
"""

import json
import sqlite3
from datetime import timedelta
from typing import Any, Dict, Optional

from .config import IDEMPOTENCY_RETENTION_SEC
from .db import get_db
from .schema import IdempotencyRecord, from_iso, to_iso, utc_now


def build_key(agent_id: str, case_id: str, request_id: str, scope: str = "outputs") -> str:
    """Deterministic key for one logical submission by one agent against one case."""
    return f"{scope}:{agent_id}:{case_id}:{request_id}"


class IdempotencyStore:
    """SQLite-backed idempotency records.

    Every method accepts an optional open connection so callers can run the
    check and the record inside their own transaction.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def _row_to_record(self, row: sqlite3.Row) -> IdempotencyRecord:
        return IdempotencyRecord(
            key=row['key'],
            agent_id=row['agent_id'],
            route=row['route'],
            case_id=row['case_id'],
            response=json.loads(row['response']),
            created_at=from_iso(row['created_at']),
        )

    def get(self, key: str, conn: Optional[sqlite3.Connection] = None) -> Optional[IdempotencyRecord]:
        if conn is None:
            with get_db(self.db_path) as own_conn:
                return self.get(key, own_conn)

        row = conn.execute(
            "SELECT key, agent_id, route, case_id, response, created_at FROM idempotency_keys WHERE key = ?",
            (key,)
        ).fetchone()
        return self._row_to_record(row) if row else None

    def lookup(self, key: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
        """Stored response for key, or None."""
        record = self.get(key, conn)
        return record.response if record else None

    def record(self, key: str, agent_id: str, route: str, response: Dict[str, Any],
               case_id: Optional[str] = None, conn: Optional[sqlite3.Connection] = None) -> Dict[str, Any]:
        """Insert the response if the key is new. Returns whichever response is stored."""
        if conn is None:
            with get_db(self.db_path) as own_conn:
                stored = self.record(key, agent_id, route, response, case_id, own_conn)
                own_conn.commit()
                return stored

        conn.execute(
            "INSERT OR IGNORE INTO idempotency_keys (key, agent_id, route, case_id, response, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (key, agent_id, route, case_id, json.dumps(response), to_iso(utc_now()))
        )
        return self.lookup(key, conn)

    def purge_expired(self, retention_seconds: Optional[int] = None) -> int:
        """Delete records older than the retention window. Returns the number removed."""
        if retention_seconds is None:
            retention_seconds = IDEMPOTENCY_RETENTION_SEC
        cutoff = to_iso(utc_now() - timedelta(seconds=retention_seconds))

        with get_db(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM idempotency_keys WHERE created_at < ?", (cutoff,))
            conn.commit()
            return cursor.rowcount
