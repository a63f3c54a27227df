"""
SQLite foundation - connection lifecycle, schema and health for the case store.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator, Optional

from .config import DB_BUSY_TIMEOUT_SEC, get_db_path, ensure_db_directory

REQUIRED_TABLES = ['agents', 'cases', 'policies', 'idempotency_keys', 'activity_log']


def _connect(db_path: Optional[str] = None, **kwargs) -> sqlite3.Connection:
    path = db_path or get_db_path()
    ensure_db_directory(path)
    conn = sqlite3.connect(path, timeout=DB_BUSY_TIMEOUT_SEC, **kwargs)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def get_db(db_path: Optional[str] = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = _connect(db_path)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def write_transaction(db_path: Optional[str] = None) -> Generator[sqlite3.Connection, None, None]:
    """Open a connection holding the database write lock until commit.

    BEGIN IMMEDIATE takes the reserved lock up front, so concurrent
    read-modify-write cycles queue behind each other (bounded by the busy
    timeout) instead of interleaving. Any exception rolls the whole unit back.
    """
    conn = _connect(db_path, isolation_level=None)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def init_db(db_path: Optional[str] = None):
    """Initialize the database with required tables."""
    with get_db(db_path) as conn:
        cursor = conn.cursor()

        # WAL lets readers proceed while a case transaction holds the write lock
        cursor.execute('PRAGMA journal_mode=WAL')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS agents (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                description TEXT NOT NULL,
                api_key TEXT NOT NULL UNIQUE,
                last_seen TEXT,
                recent_activity TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL
            )
        ''')

        # outputs and audit_trail hold JSON arrays bounded by the appender
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS cases (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                type TEXT NOT NULL DEFAULT 'general',
                status TEXT NOT NULL DEFAULT 'open',
                input TEXT NOT NULL,
                outputs TEXT NOT NULL DEFAULT '[]',
                audit_trail TEXT NOT NULL DEFAULT '[]',
                created_by TEXT,
                tags TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS policies (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                version TEXT NOT NULL,
                chunks TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL,
                UNIQUE (name, version)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS idempotency_keys (
                key TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL,
                route TEXT NOT NULL,
                case_id TEXT,
                response TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS activity_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ts TEXT NOT NULL,
                actor_type TEXT NOT NULL,
                actor_id TEXT,
                action TEXT NOT NULL,
                case_id TEXT,
                metadata TEXT
            )
        ''')

        # Indexes for the listing paths
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_cases_status_created ON cases(status, created_at DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_idempotency_created ON idempotency_keys(created_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_activity_ts ON activity_log(ts DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_activity_case_ts ON activity_log(case_id, ts DESC)')

        conn.commit()


def health_check(db_path: Optional[str] = None):
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]
            return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False
