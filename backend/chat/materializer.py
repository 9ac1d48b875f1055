from __future__ import annotations

import json
import sqlite3
from typing import Any

from chat.events import (
    EVENT_ERROR,
    EVENT_MESSAGE_SENT,
    EVENT_REASONING_COMPLETED,
    EVENT_TOOL_COMPLETED,
    EVENT_TOOL_REQUESTED,
    EVENT_TURN_CANCELLED,
    EVENT_USER_MESSAGE,
    MaterializedMessage,
    StoredEvent,
)
from meta import decode_json_column, get_conn


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=True, default=str)


def message_for_event(event: StoredEvent) -> MaterializedMessage | None:
    """Project one stored event onto its read-model row.

    Returns None for events that only exist in the log (session markers,
    approval bookkeeping). Row ids and timestamps derive from the event so
    the live path and a replay produce the same rows.
    """
    payload = event.payload
    message_id = str(payload.get("message_id") or f"msg_{event.id}")

    role: str
    message_type: str
    content: str
    metadata: dict[str, Any]

    if event.type == EVENT_USER_MESSAGE:
        role, message_type = "user", "text"
        content = _stringify(payload.get("content"))
        metadata = {}
    elif event.type == EVENT_REASONING_COMPLETED:
        role, message_type = "assistant", "thinking"
        content = _stringify(payload.get("content"))
        metadata = {}
    elif event.type == EVENT_MESSAGE_SENT:
        role, message_type = "assistant", "text"
        content = _stringify(payload.get("content"))
        metadata = {
            "stop_reason": payload.get("stop_reason"),
            "model": payload.get("model"),
            "input_tokens": payload.get("input_tokens"),
            "output_tokens": payload.get("output_tokens"),
        }
    elif event.type == EVENT_TOOL_REQUESTED:
        tool_use_id = str(payload.get("tool_use_id") or "")
        message_id = tool_use_id or message_id
        role, message_type = "assistant", "tool_use"
        content = ""
        metadata = {
            "tool_use_id": tool_use_id,
            "tool_name": payload.get("tool_name"),
            "tool_args": payload.get("tool_args") or {},
        }
    elif event.type == EVENT_TOOL_COMPLETED:
        tool_use_id = str(payload.get("tool_use_id") or "")
        if tool_use_id:
            message_id = f"{tool_use_id}_result"
        success = bool(payload.get("success"))
        role, message_type = "assistant", "tool_result"
        content = (
            _stringify(payload.get("tool_result"))
            if success
            else _stringify(payload.get("error_message"))
        )
        metadata = {
            "tool_use_id": tool_use_id,
            "tool_name": payload.get("tool_name"),
            "success": success,
            "error_message": payload.get("error_message"),
        }
    elif event.type == EVENT_ERROR:
        role, message_type = "system", "error"
        content = _stringify(payload.get("message"))
        metadata = {
            "code": payload.get("code"),
            "stop_reason": payload.get("stop_reason"),
        }
    elif event.type == EVENT_TURN_CANCELLED:
        role, message_type = "assistant", "truncated"
        content = _stringify(payload.get("content"))
        metadata = {"reasoning": payload.get("reasoning") or "", "truncated": True}
    else:
        return None

    return MaterializedMessage(
        id=message_id,
        conversation_id=event.conversation_id,
        role=role,
        message_type=message_type,
        content=content,
        metadata=metadata,
        sequence_number=event.sequence_number,
        event_id=event.id,
        created_at=event.timestamp,
    )


def upsert_message(conn: sqlite3.Connection, message: MaterializedMessage) -> None:
    conn.execute(
        """
        INSERT INTO messages
        (id, conversation_id, role, message_type, content, metadata, sequence_number, event_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            role = excluded.role,
            message_type = excluded.message_type,
            content = excluded.content,
            metadata = excluded.metadata,
            sequence_number = excluded.sequence_number,
            event_id = excluded.event_id,
            created_at = excluded.created_at
        """,
        (
            message.id,
            message.conversation_id,
            message.role,
            message.message_type,
            message.content,
            json.dumps(message.metadata, ensure_ascii=True, default=str),
            message.sequence_number,
            message.event_id,
            message.created_at,
        ),
    )


def write_message(message: MaterializedMessage) -> None:
    """Synchronous single-row write, used by workers and the degraded path."""
    with get_conn() as conn:
        upsert_message(conn, message)
        conn.commit()


def message_row_to_message(row: sqlite3.Row) -> MaterializedMessage:
    return MaterializedMessage(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        message_type=row["message_type"],
        content=row["content"],
        metadata=decode_json_column(row["metadata"], {}),
        sequence_number=int(row["sequence_number"]),
        event_id=row["event_id"],
        created_at=row["created_at"],
    )


def list_messages(conversation_id: str) -> list[MaterializedMessage]:
    with get_conn() as conn:
        rows = conn.execute(
            """
            SELECT id, conversation_id, role, message_type, content, metadata,
                   sequence_number, event_id, created_at
            FROM messages
            WHERE conversation_id = ?
            ORDER BY sequence_number ASC, created_at ASC
            """,
            (conversation_id,),
        ).fetchall()
    return [message_row_to_message(row) for row in rows]


def rebuild_from_events(events: list[StoredEvent]) -> list[MaterializedMessage]:
    """Pure replay of the read model; the live queue must produce the same list."""
    rebuilt: dict[str, MaterializedMessage] = {}
    for event in events:
        message = message_for_event(event)
        if message is not None:
            rebuilt[message.id] = message
    return sorted(rebuilt.values(), key=lambda m: (m.sequence_number, m.created_at))


def replace_conversation_messages(
    conversation_id: str, messages: list[MaterializedMessage]
) -> int:
    """Swap a conversation's read model for ``messages`` in one transaction."""
    with get_conn() as conn:
        conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
        for message in messages:
            upsert_message(conn, message)
        conn.commit()
    return len(messages)
