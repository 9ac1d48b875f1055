from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from chat.errors import CounterUnavailableError


class CounterBackend(Protocol):
    """Atomic integer counters keyed by string, with per-key expiry.

    Mirrors the subset of a Redis-style counter service the allocator and the
    rate limiter rely on. Implementations raise ``CounterUnavailableError``
    when the service cannot be reached.
    """

    async def incr_by(self, key: str, amount: int = 1) -> int: ...

    async def expire(self, key: str, ttl_seconds: float) -> None: ...

    async def get(self, key: str) -> int | None: ...

    async def set_if_absent(self, key: str, value: int) -> bool: ...

    async def delete(self, key: str) -> bool: ...


@dataclass
class _Entry:
    value: int
    expires_at: float | None


class InMemoryCounterBackend:
    """Process-local counter service.

    All operations take a single lock, so ``incr_by`` is atomic across
    threads and across coroutines sharing the loop. ``available`` can be
    flipped off to simulate an outage.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise CounterUnavailableError("counter service unavailable")

    def _live(self, key: str) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    async def incr_by(self, key: str, amount: int = 1) -> int:
        self._check()
        with self._lock:
            entry = self._live(key)
            if entry is None:
                entry = _Entry(value=0, expires_at=None)
                self._entries[key] = entry
            entry.value += amount
            return entry.value

    async def expire(self, key: str, ttl_seconds: float) -> None:
        self._check()
        with self._lock:
            entry = self._live(key)
            if entry is not None:
                entry.expires_at = self._clock() + ttl_seconds

    async def get(self, key: str) -> int | None:
        self._check()
        with self._lock:
            entry = self._live(key)
            return None if entry is None else entry.value

    async def set_if_absent(self, key: str, value: int) -> bool:
        self._check()
        with self._lock:
            if self._live(key) is not None:
                return False
            self._entries[key] = _Entry(value=value, expires_at=None)
            return True

    async def delete(self, key: str) -> bool:
        self._check()
        with self._lock:
            return self._entries.pop(key, None) is not None

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            stale = [
                key
                for key, entry in self._entries.items()
                if entry.expires_at is not None and entry.expires_at <= now
            ]
            for key in stale:
                del self._entries[key]
            return len(stale)
