"""
SQLite-backed collaborators of the submission pipeline:
- CaseStore: cases, their bounded logs, and the policy reference documents
- AgentDirectory: credential resolution and last-seen bookkeeping
- ActivitySink: append-only observability stream
"""

import json
import secrets
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Generator, Iterable, List, Optional, Tuple

from .config import AGENT_RECENT_ACTIVITY_CAP
from .db import get_db, write_transaction
from .errors import NotFound
from .redact import redact_pii
from .schema import (
    CASE_STATUSES,
    ActivityEntry,
    Agent,
    AuditEntry,
    Case,
    OutputEntry,
    Policy,
    PolicyChunk,
    from_iso,
    to_iso,
    utc_now,
)
from ..util.logging import logger

CASE_COLUMNS = "id, title, type, status, input, outputs, audit_trail, created_by, tags, created_at, updated_at"


def _new_id() -> str:
    return uuid.uuid4().hex


def _row_to_case(row: sqlite3.Row) -> Case:
    return Case(
        id=row['id'],
        title=row['title'],
        type=row['type'],
        status=row['status'],
        input=row['input'],
        outputs=[OutputEntry.from_dict(o) for o in json.loads(row['outputs'])],
        audit_trail=[AuditEntry.from_dict(a) for a in json.loads(row['audit_trail'])],
        created_by=row['created_by'],
        tags=json.loads(row['tags']),
        created_at=from_iso(row['created_at']),
        updated_at=from_iso(row['updated_at']),
    )


def _row_to_policy(row: sqlite3.Row) -> Policy:
    return Policy(
        id=row['id'],
        name=row['name'],
        version=row['version'],
        chunks=[PolicyChunk(id=c['id'], text=c['text'], title=c.get('title')) for c in json.loads(row['chunks'])],
        created_at=from_iso(row['created_at']),
    )


@dataclass
class CaseTransaction:
    """A case loaded under the database write lock, plus the connection holding it."""
    case: Case
    conn: sqlite3.Connection
    store: 'CaseStore'

    def save(self):
        self.store.save_logs(self.case, self.conn)


class CaseStore:
    """Case and policy persistence."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def create(self, title: str, case_type: str, input_text: str, created_by: Optional[str],
               tags: Iterable[str] = (), audit_trail: Iterable[AuditEntry] = ()) -> Case:
        now = utc_now()
        case = Case(
            id=_new_id(),
            title=title,
            type=case_type,
            status=CASE_STATUSES[0],
            input=input_text,
            created_at=now,
            updated_at=now,
            audit_trail=list(audit_trail),
            created_by=created_by,
            tags=list(tags),
        )
        with get_db(self.db_path) as conn:
            conn.execute(
                f"INSERT INTO cases ({CASE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (case.id, case.title, case.type, case.status, case.input,
                 json.dumps([o.to_dict() for o in case.outputs]),
                 json.dumps([a.to_dict() for a in case.audit_trail]),
                 case.created_by, json.dumps(case.tags),
                 to_iso(case.created_at), to_iso(case.updated_at))
            )
            conn.commit()
        return case

    def get(self, case_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Case]:
        if conn is None:
            with get_db(self.db_path) as own_conn:
                return self.get(case_id, own_conn)

        row = conn.execute(f"SELECT {CASE_COLUMNS} FROM cases WHERE id = ?", (case_id,)).fetchone()
        return _row_to_case(row) if row else None

    @contextmanager
    def transaction(self, case_id: str) -> Generator[CaseTransaction, None, None]:
        """Serialize load -> mutate -> save for one case.

        The case is re-read after the write lock is taken, so the caller always
        mutates the latest committed logs. Raises NotFound if the case is gone.
        """
        with write_transaction(self.db_path) as conn:
            case = self.get(case_id, conn)
            if case is None:
                raise NotFound(f"Case not found: {case_id}")
            yield CaseTransaction(case=case, conn=conn, store=self)

    def save_logs(self, case: Case, conn: sqlite3.Connection):
        """Persist the output log and audit trail of a case."""
        case.updated_at = utc_now()
        conn.execute(
            "UPDATE cases SET outputs = ?, audit_trail = ?, updated_at = ? WHERE id = ?",
            (json.dumps([o.to_dict() for o in case.outputs]),
             json.dumps([a.to_dict() for a in case.audit_trail]),
             to_iso(case.updated_at), case.id)
        )

    # Reference documents

    def add_policy(self, name: str, version: str, chunks: Iterable[Dict[str, Any]]) -> Policy:
        policy = Policy(
            id=_new_id(),
            name=name.strip(),
            version=version.strip(),
            chunks=[PolicyChunk(id=str(c['id']), text=str(c['text']), title=c.get('title')) for c in chunks],
            created_at=utc_now(),
        )
        with get_db(self.db_path) as conn:
            conn.execute(
                "INSERT INTO policies (id, name, version, chunks, created_at) VALUES (?, ?, ?, ?, ?)",
                (policy.id, policy.name, policy.version,
                 json.dumps([c.to_dict() for c in policy.chunks]), to_iso(policy.created_at))
            )
            conn.commit()
        return policy

    def get_policy(self, policy_id: str) -> Optional[Policy]:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT id, name, version, chunks, created_at FROM policies WHERE id = ?", (policy_id,)
            ).fetchone()
        return _row_to_policy(row) if row else None


class AgentDirectory:
    """Resolves API keys to agents and keeps their last-seen data."""

    def __init__(self, db_path: Optional[str] = None, recent_activity_cap: int = AGENT_RECENT_ACTIVITY_CAP):
        self.db_path = db_path
        self.recent_activity_cap = recent_activity_cap

    @staticmethod
    def _row_to_agent(row: sqlite3.Row) -> Agent:
        return Agent(
            id=row['id'],
            name=row['name'],
            description=row['description'],
            created_at=from_iso(row['created_at']),
            last_seen=from_iso(row['last_seen']) if row['last_seen'] else None,
            recent_activity=json.loads(row['recent_activity']),
        )

    def register(self, name: str, description: str) -> Tuple[Agent, str]:
        """Create an agent for operator seeding. Returns the agent and its API key."""
        agent = Agent(id=_new_id(), name=name, description=description, created_at=utc_now())
        api_key = f"cd_{secrets.token_urlsafe(24)}"
        with get_db(self.db_path) as conn:
            conn.execute(
                "INSERT INTO agents (id, name, description, api_key, created_at) VALUES (?, ?, ?, ?, ?)",
                (agent.id, agent.name, agent.description, api_key, to_iso(agent.created_at))
            )
            conn.commit()
        return agent, api_key

    def resolve(self, api_key: str) -> Optional[Agent]:
        if not api_key:
            return None
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT id, name, description, last_seen, recent_activity, created_at FROM agents WHERE api_key = ?",
                (api_key,)
            ).fetchone()
        return self._row_to_agent(row) if row else None

    def get(self, agent_id: str) -> Optional[Agent]:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT id, name, description, last_seen, recent_activity, created_at FROM agents WHERE id = ?",
                (agent_id,)
            ).fetchone()
        return self._row_to_agent(row) if row else None

    def touch(self, agent_id: str, label: str) -> bool:
        """Best effort: bump last_seen and push label onto recent activity (newest first)."""
        try:
            with write_transaction(self.db_path) as conn:
                row = conn.execute("SELECT recent_activity FROM agents WHERE id = ?", (agent_id,)).fetchone()
                if row is None:
                    return False
                recent = [label] + json.loads(row['recent_activity'])
                conn.execute(
                    "UPDATE agents SET last_seen = ?, recent_activity = ? WHERE id = ?",
                    (to_iso(utc_now()), json.dumps(recent[:self.recent_activity_cap]), agent_id)
                )
            return True
        except Exception as e:
            logger.log_best_effort_failure("agent.touch", e)
            return False


class ActivitySink:
    """Append-only activity stream used purely for observability."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def log(self, actor_type: str, action: str, actor_id: Optional[str] = None,
            case_id: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Fire-and-forget write. Failures are logged and swallowed."""
        try:
            with get_db(self.db_path) as conn:
                conn.execute(
                    "INSERT INTO activity_log (ts, actor_type, actor_id, action, case_id, metadata) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (to_iso(utc_now()), actor_type, actor_id, action, case_id,
                     json.dumps(redact_pii(metadata)) if metadata is not None else None)
                )
                conn.commit()
            return True
        except Exception as e:
            logger.log_best_effort_failure(f"activity.{action}", e)
            return False

    def list(self, limit: int = 20, offset: int = 0, case_id: Optional[str] = None) -> Tuple[List[ActivityEntry], int]:
        """Newest first, with the total count for the same filter."""
        where, params = ("WHERE case_id = ?", [case_id]) if case_id else ("", [])
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT id, ts, actor_type, actor_id, action, case_id, metadata FROM activity_log {where} "
                "ORDER BY ts DESC, id DESC LIMIT ? OFFSET ?",
                params + [limit, offset]
            ).fetchall()
            total = conn.execute(f"SELECT COUNT(*) FROM activity_log {where}", params).fetchone()[0]

        entries = [
            ActivityEntry(
                id=row['id'],
                ts=from_iso(row['ts']),
                actor_type=row['actor_type'],
                actor_id=row['actor_id'],
                action=row['action'],
                case_id=row['case_id'],
                metadata=json.loads(row['metadata']) if row['metadata'] else None,
            )
            for row in rows
        ]
        return entries, total
