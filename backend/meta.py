from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any
from uuid import uuid4

BASE_DIR = Path(__file__).resolve().parent
DB_DIR = BASE_DIR / "data"
DB_PATH = DB_DIR / "meta.db"


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS message_events (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        sequence_number INTEGER NOT NULL,
        timestamp TEXT NOT NULL,
        data TEXT NOT NULL,
        processed INTEGER NOT NULL DEFAULT 0
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_message_events_conversation_sequence
    ON message_events (conversation_id, sequence_number);
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_message_events_processed
    ON message_events (processed, timestamp);
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL,
        role TEXT NOT NULL,
        message_type TEXT NOT NULL,
        content TEXT NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}',
        sequence_number INTEGER NOT NULL,
        event_id TEXT NOT NULL,
        created_at TEXT NOT NULL
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_messages_conversation_sequence
    ON messages (conversation_id, sequence_number);
    """,
    """
    CREATE TABLE IF NOT EXISTS approvals (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL,
        tool_name TEXT NOT NULL,
        tool_args TEXT NOT NULL,
        action_description TEXT NULL,
        status TEXT NOT NULL,
        priority TEXT NOT NULL,
        rejection_reason TEXT NULL,
        created_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        decided_at TEXT NULL,
        decided_by TEXT NULL
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_approvals_conversation_status
    ON approvals (conversation_id, status);
    """,
    """
    CREATE TABLE IF NOT EXISTS persistence_jobs (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL,
        event_id TEXT NOT NULL,
        job_json TEXT NOT NULL,
        status TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        error TEXT NULL,
        created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
        started_at DATETIME NULL,
        finished_at DATETIME NULL
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_persistence_jobs_status_created
    ON persistence_jobs (status, created_at);
    """,
)


def new_id(prefix: str) -> str:
    """
    Generate a new id given a prefix
    """
    return f"{prefix}_{uuid4().hex}"


@contextmanager
def get_conn() -> Iterator[sqlite3.Connection]:
    DB_DIR.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row

    try:
        yield conn
    finally:
        conn.close()


def init_meta_db() -> None:
    with get_conn() as conn:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(statement)
        conn.commit()


def decode_json_column(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def purge_conversation_rows(conn: sqlite3.Connection, conversation_id: str) -> dict[str, int]:
    """Delete every row owned by a conversation. Returns per-table counts."""
    counts: dict[str, int] = {}
    for table in ("messages", "persistence_jobs", "approvals", "message_events"):
        cursor = conn.execute(
            f"DELETE FROM {table} WHERE conversation_id = ?",
            (conversation_id,),
        )
        counts[table] = cursor.rowcount
    return counts
