from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from chat.events import EVENT_TYPES, StoredEvent
from chat.sequence import SequenceAllocator, max_stored_sequence
from meta import get_conn, new_id, purge_conversation_rows

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def event_row_to_event(row: sqlite3.Row) -> StoredEvent:
    return StoredEvent(
        id=row["id"],
        conversation_id=row["conversation_id"],
        type=row["event_type"],
        sequence_number=int(row["sequence_number"]),
        timestamp=row["timestamp"],
        payload=json.loads(row["data"]),
        processed=bool(row["processed"]),
    )


class EventLog:
    """Append-only log of conversation events.

    ``append`` and ``append_with_sequence`` commit before returning; that
    commit is the durability boundary for a turn. Reads always come back in
    ascending sequence order, with insertion order breaking ties.
    """

    def __init__(self, allocator: SequenceAllocator) -> None:
        self._allocator = allocator

    @property
    def allocator(self) -> SequenceAllocator:
        return self._allocator

    async def append(
        self,
        conversation_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> StoredEvent:
        sequence_number = await self._allocator.reserve_one(conversation_id)
        return self._insert(conversation_id, event_type, payload, sequence_number)

    async def append_with_sequence(
        self,
        conversation_id: str,
        event_type: str,
        payload: dict[str, Any],
        sequence_number: int,
    ) -> StoredEvent:
        if sequence_number < 0:
            raise ValueError("sequence_number must be non-negative")
        return self._insert(conversation_id, event_type, payload, sequence_number)

    def _insert(
        self,
        conversation_id: str,
        event_type: str,
        payload: dict[str, Any],
        sequence_number: int,
    ) -> StoredEvent:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unknown event type '{event_type}'")

        event = StoredEvent(
            id=new_id("event"),
            conversation_id=conversation_id,
            type=event_type,
            sequence_number=sequence_number,
            timestamp=utc_now_iso(),
            payload=dict(payload),
            processed=False,
        )
        try:
            with get_conn() as conn:
                conn.execute(
                    """
                    INSERT INTO message_events
                    (id, conversation_id, event_type, sequence_number, timestamp, data, processed)
                    VALUES (?, ?, ?, ?, ?, ?, 0)
                    """,
                    (
                        event.id,
                        conversation_id,
                        event_type,
                        sequence_number,
                        event.timestamp,
                        json.dumps(event.payload, ensure_ascii=True, default=str),
                    ),
                )
                conn.commit()
        except sqlite3.Error:
            logger.exception(
                "Failed to append %s event for conversation %s",
                event_type,
                conversation_id,
            )
            raise

        logger.debug(
            "Event appended: conversation=%s type=%s seq=%d id=%s",
            conversation_id,
            event_type,
            sequence_number,
            event.id,
        )
        return event

    def get_events(
        self,
        conversation_id: str,
        from_seq: int | None = None,
        to_seq: int | None = None,
    ) -> list[StoredEvent]:
        query = """
            SELECT id, conversation_id, event_type, sequence_number, timestamp, data, processed
            FROM message_events
            WHERE conversation_id = ?
        """
        params: list[Any] = [conversation_id]
        if from_seq is not None:
            query += " AND sequence_number >= ?"
            params.append(from_seq)
        if to_seq is not None:
            query += " AND sequence_number <= ?"
            params.append(to_seq)
        query += " ORDER BY sequence_number ASC, rowid ASC"

        with get_conn() as conn:
            rows = conn.execute(query, params).fetchall()
        return [event_row_to_event(row) for row in rows]

    def get_event(self, event_id: str) -> StoredEvent | None:
        with get_conn() as conn:
            row = conn.execute(
                """
                SELECT id, conversation_id, event_type, sequence_number, timestamp, data, processed
                FROM message_events
                WHERE id = ?
                """,
                (event_id,),
            ).fetchone()
        return None if row is None else event_row_to_event(row)

    async def replay(
        self,
        conversation_id: str,
        handler: Callable[[StoredEvent], Awaitable[None] | None],
    ) -> int:
        events = self.get_events(conversation_id)
        logger.info(
            "Replaying %d events for conversation %s", len(events), conversation_id
        )
        for event in events:
            outcome = handler(event)
            if outcome is not None:
                await outcome
        return len(events)

    def mark_processed(self, event_id: str) -> None:
        with get_conn() as conn:
            conn.execute(
                "UPDATE message_events SET processed = 1 WHERE id = ?",
                (event_id,),
            )
            conn.commit()

    def get_unprocessed_events(
        self, conversation_id: str | None = None
    ) -> list[StoredEvent]:
        query = """
            SELECT id, conversation_id, event_type, sequence_number, timestamp, data, processed
            FROM message_events
            WHERE processed = 0
        """
        params: list[Any] = []
        if conversation_id is not None:
            query += " AND conversation_id = ?"
            params.append(conversation_id)
        query += " ORDER BY conversation_id ASC, sequence_number ASC, rowid ASC"

        with get_conn() as conn:
            rows = conn.execute(query, params).fetchall()
        return [event_row_to_event(row) for row in rows]

    def count_events(self, conversation_id: str) -> int:
        with get_conn() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM message_events WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
        return int(row["count"])

    def last_sequence_number(self, conversation_id: str) -> int:
        return max_stored_sequence(conversation_id)

    def last_event_id(self, conversation_id: str) -> str | None:
        with get_conn() as conn:
            row = conn.execute(
                """
                SELECT id
                FROM message_events
                WHERE conversation_id = ?
                ORDER BY sequence_number DESC, rowid DESC
                LIMIT 1
                """,
                (conversation_id,),
            ).fetchone()
        return None if row is None else str(row["id"])

    def purge_conversation(self, conversation_id: str) -> dict[str, int]:
        with get_conn() as conn:
            counts = purge_conversation_rows(conn, conversation_id)
            conn.commit()
        logger.info("Purged conversation %s: %s", conversation_id, counts)
        return counts
