from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from chat.errors import PersistenceError, QueueUnavailableError
from chat.event_store import EventLog
from chat.events import MaterializedMessage, StoredEvent, TurnEvent, notification_for
from chat.materializer import message_for_event, write_message
from chat.persistence_queue import PersistenceQueue

logger = logging.getLogger(__name__)

NotificationCallback = Callable[[dict[str, Any]], Awaitable[None]]


class EventWriter:
    """Append to the log, then hand the read-model row to the queue.

    The append is the durability boundary. If the queue is down the row is
    written directly once; if that fails too, ``PersistenceError`` carries
    both causes. A rate-limit rejection is not degraded and propagates.
    """

    def __init__(
        self,
        *,
        event_log: EventLog,
        queue: PersistenceQueue,
        direct_writer: Callable[[MaterializedMessage], None] = write_message,
    ) -> None:
        self._event_log = event_log
        self._queue = queue
        self._direct_writer = direct_writer
        self.degraded_writes = 0

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    async def persist(
        self,
        conversation_id: str,
        event_type: str,
        payload: dict[str, Any],
        *,
        sequence_number: int | None = None,
    ) -> StoredEvent:
        if sequence_number is None:
            event = await self._event_log.append(conversation_id, event_type, payload)
        else:
            event = await self._event_log.append_with_sequence(
                conversation_id, event_type, payload, sequence_number
            )

        message = message_for_event(event)
        if message is None:
            self._event_log.mark_processed(event.id)
            return event

        try:
            await self._queue.enqueue(message)
        except QueueUnavailableError as queue_error:
            logger.warning(
                "Persistence queue unavailable, writing %s directly (conversation=%s, seq=%d): %s",
                event.type,
                conversation_id,
                event.sequence_number,
                queue_error,
            )
            self._write_direct(event, message, queue_error)
        return event

    def _write_direct(
        self,
        event: StoredEvent,
        message: MaterializedMessage,
        queue_error: QueueUnavailableError,
    ) -> None:
        try:
            self._direct_writer(message)
            self._event_log.mark_processed(event.id)
        except Exception as fallback_error:
            logger.error(
                "Direct write failed for event %s after queue failure: %s",
                event.id,
                fallback_error,
            )
            raise PersistenceError(
                f"could not materialize event {event.id}",
                queue_error=queue_error,
                fallback_error=fallback_error,
            ) from fallback_error
        self.degraded_writes += 1


async def notify(
    on_notification: NotificationCallback | None,
    turn_event: TurnEvent,
    stored: StoredEvent | None = None,
) -> None:
    if on_notification is None:
        return
    await on_notification(notification_for(turn_event, stored))
