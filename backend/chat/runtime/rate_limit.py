from __future__ import annotations

import logging
from dataclasses import dataclass

from chat.errors import CounterUnavailableError
from chat.runtime.counters import CounterBackend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitStatus:
    count: int
    limit: int
    remaining: int
    within_limit: bool

    def to_dict(self) -> dict[str, int | bool]:
        return {
            "count": self.count,
            "limit": self.limit,
            "remaining": self.remaining,
            "within_limit": self.within_limit,
        }


class ConversationRateLimiter:
    """Per-conversation job ceiling over a window, counted on the shared counter service.

    The window opens on the first job and the key expires when it closes.
    If the counter service is down the check fails open.
    """

    def __init__(
        self,
        counter: CounterBackend,
        *,
        max_jobs: int = 100,
        window_seconds: float = 3600,
    ) -> None:
        self._counter = counter
        self.max_jobs = max(1, int(max_jobs))
        self.window_seconds = window_seconds

    @staticmethod
    def counter_key(conversation_id: str) -> str:
        return f"queue:ratelimit:{conversation_id}"

    async def hit(self, conversation_id: str) -> tuple[bool, int]:
        key = self.counter_key(conversation_id)
        try:
            count = await self._counter.incr_by(key, 1)
            if count == 1:
                await self._counter.expire(key, self.window_seconds)
        except CounterUnavailableError as exc:
            logger.warning(
                "Failed to check rate limit for conversation %s: %s",
                conversation_id,
                exc,
            )
            return True, 0

        within_limit = count <= self.max_jobs
        if not within_limit:
            logger.warning(
                "Rate limit exceeded for conversation %s (%d > %d)",
                conversation_id,
                count,
                self.max_jobs,
            )
        return within_limit, count

    async def status(self, conversation_id: str) -> RateLimitStatus:
        try:
            count = await self._counter.get(self.counter_key(conversation_id)) or 0
        except CounterUnavailableError as exc:
            logger.error(
                "Failed to read rate limit status for %s: %s", conversation_id, exc
            )
            count = 0
        return RateLimitStatus(
            count=count,
            limit=self.max_jobs,
            remaining=max(0, self.max_jobs - count),
            within_limit=count <= self.max_jobs,
        )
