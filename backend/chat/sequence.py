from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from chat.errors import CounterUnavailableError, SequenceAllocationError
from chat.runtime.counters import CounterBackend
from meta import get_conn

logger = logging.getLogger(__name__)

DEFAULT_COUNTER_TTL_SECONDS = 7 * 24 * 60 * 60


@dataclass(frozen=True)
class SequenceReservation:
    conversation_id: str
    sequences: tuple[int, ...]

    def __len__(self) -> int:
        return len(self.sequences)

    def __iter__(self):
        return iter(self.sequences)

    def __getitem__(self, index: int) -> int:
        return self.sequences[index]


def max_stored_sequence(conversation_id: str) -> int:
    """Highest sequence number persisted for a conversation, -1 when empty."""
    with get_conn() as conn:
        row = conn.execute(
            """
            SELECT COALESCE(MAX(sequence_number), -1) AS max_seq
            FROM message_events
            WHERE conversation_id = ?
            """,
            (conversation_id,),
        ).fetchone()
    return int(row["max_seq"])


class SequenceAllocator:
    """Hands out per-conversation sequence numbers.

    The counter backend is the primary source: one atomic ``incr_by`` per
    reservation, with a sliding expiry so abandoned conversations are
    reclaimed. An absent key is seeded from the store before incrementing.

    When the counter backend is unreachable the allocator falls back to
    ``MAX(sequence_number) + 1`` from the store. That read is not atomic:
    two callers racing through the fallback can be handed the same number.
    The trade-off favours availability and is logged on every use. Numbers
    this allocator has already handed out are remembered per conversation,
    so slots reserved but not yet written are never handed out twice by the
    same process.
    """

    def __init__(
        self,
        counter: CounterBackend,
        *,
        ttl_seconds: float = DEFAULT_COUNTER_TTL_SECONDS,
    ) -> None:
        self._counter = counter
        self._ttl_seconds = ttl_seconds
        self.fallback_count = 0
        self._high_water: dict[str, int] = {}

    @staticmethod
    def counter_key(conversation_id: str) -> str:
        return f"event:sequence:{conversation_id}"

    async def reserve_one(self, conversation_id: str) -> int:
        reservation = await self.reserve_batch(conversation_id, 1)
        return reservation.sequences[0]

    async def reserve_batch(self, conversation_id: str, n: int) -> SequenceReservation:
        if n < 1:
            raise ValueError("reservation size must be at least 1")

        try:
            sequences = await self._reserve_from_counter(conversation_id, n)
        except CounterUnavailableError as exc:
            logger.error(
                "Counter service unavailable for conversation %s: %s",
                conversation_id,
                exc,
            )
            sequences = self._reserve_from_store(conversation_id, n)

        if sequences[-1] > self._high_water.get(conversation_id, -1):
            self._high_water[conversation_id] = sequences[-1]
        return SequenceReservation(
            conversation_id=conversation_id,
            sequences=tuple(sequences),
        )

    async def _reserve_from_counter(self, conversation_id: str, n: int) -> range:
        key = self.counter_key(conversation_id)

        if await self._counter.get(key) is None:
            seed = self._next_free(conversation_id)
            if await self._counter.set_if_absent(key, seed):
                logger.debug(
                    "Seeded sequence counter for %s at %d", conversation_id, seed
                )

        last = await self._counter.incr_by(key, n)

        try:
            await self._counter.expire(key, self._ttl_seconds)
        except CounterUnavailableError as exc:
            # The increment already happened, so the numbers are still ours.
            logger.warning(
                "Failed to refresh sequence counter expiry for %s: %s",
                conversation_id,
                exc,
            )

        return range(last - n, last)

    def _reserve_from_store(self, conversation_id: str, n: int) -> range:
        start = self._next_free(conversation_id)
        self.fallback_count += 1
        logger.warning(
            "Using non-atomic database fallback for sequence numbers "
            "(conversation=%s, start=%d, count=%d); concurrent callers may collide",
            conversation_id,
            start,
            n,
        )
        return range(start, start + n)

    def _next_free(self, conversation_id: str) -> int:
        return max(
            self._next_from_store(conversation_id),
            self._high_water.get(conversation_id, -1) + 1,
        )

    @staticmethod
    def _next_from_store(conversation_id: str) -> int:
        try:
            return max_stored_sequence(conversation_id) + 1
        except sqlite3.Error as exc:
            logger.error(
                "Database sequence lookup failed for %s: %s", conversation_id, exc
            )
            raise SequenceAllocationError(
                f"could not allocate sequence for conversation {conversation_id}"
            ) from exc

    async def forget(self, conversation_id: str) -> None:
        """Drop the counter for a purged conversation; the next reservation re-seeds from the store."""
        self._high_water.pop(conversation_id, None)
        try:
            await self._counter.delete(self.counter_key(conversation_id))
        except CounterUnavailableError as exc:
            logger.warning(
                "Could not drop sequence counter for %s: %s", conversation_id, exc
            )
