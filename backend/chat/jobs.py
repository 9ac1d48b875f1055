from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

JOB_KIND_TURN = "turn"


class ConversationBusyError(RuntimeError):
    pass


@dataclass
class _QueuedJob:
    kind: str
    factory: Callable[[], Awaitable[Any]]
    future: asyncio.Future[Any]


@dataclass
class _ConversationLane:
    pending: deque[_QueuedJob] = field(default_factory=deque)
    current: _QueuedJob | None = None
    worker: asyncio.Task[None] | None = None


class ConversationTurnCoordinator:
    """One job at a time per conversation; conversations run in parallel.

    Turns queue behind each other. Work that rewrites a conversation's
    history (purge, read-model rebuild) goes through ``run_when_idle``: it is
    refused with ``ConversationBusyError`` while anything is running or
    queued for the conversation, and turns submitted while it runs wait
    behind it.
    """

    def __init__(self) -> None:
        self._lanes: dict[str, _ConversationLane] = {}
        self._closed = False

    def is_busy(self, conversation_id: str) -> bool:
        return conversation_id in self._lanes

    def active_kind(self, conversation_id: str) -> str | None:
        lane = self._lanes.get(conversation_id)
        if lane is None or lane.current is None:
            return None
        return lane.current.kind

    def queued_count(self, conversation_id: str) -> int:
        lane = self._lanes.get(conversation_id)
        return len(lane.pending) if lane is not None else 0

    def active_conversations(self) -> list[str]:
        return sorted(self._lanes)

    async def run(
        self,
        conversation_id: str,
        factory: Callable[[], Awaitable[T]],
        *,
        kind: str = JOB_KIND_TURN,
    ) -> T:
        if self._closed:
            raise RuntimeError("conversation turn coordinator is shut down")

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        lane = self._lanes.get(conversation_id)
        if lane is None:
            lane = _ConversationLane()
            self._lanes[conversation_id] = lane
        lane.pending.append(_QueuedJob(kind=kind, factory=factory, future=future))
        if lane.worker is None:
            lane.worker = asyncio.create_task(self._drain(conversation_id, lane))
        return await future

    async def run_when_idle(
        self,
        conversation_id: str,
        factory: Callable[[], Awaitable[T]],
        *,
        kind: str,
    ) -> T:
        # Check and enqueue happen without an await in between.
        if self.is_busy(conversation_id):
            active = self.active_kind(conversation_id) or JOB_KIND_TURN
            raise ConversationBusyError(
                f"conversation {conversation_id} has a {active} in progress"
            )
        return await self.run(conversation_id, factory, kind=kind)

    async def shutdown(self) -> None:
        self._closed = True
        lanes = list(self._lanes.values())
        self._lanes.clear()

        error = RuntimeError("conversation turn coordinator is shutting down")
        workers: list[asyncio.Task[None]] = []
        for lane in lanes:
            while lane.pending:
                queued = lane.pending.popleft()
                if not queued.future.done():
                    queued.future.set_exception(error)
            if lane.worker is not None:
                workers.append(lane.worker)

        for worker in workers:
            worker.cancel()
        for worker in workers:
            try:
                await worker
            except asyncio.CancelledError:
                pass

        for lane in lanes:
            if lane.current is not None and not lane.current.future.done():
                lane.current.future.set_exception(error)
        if lanes:
            logger.info("Conversation coordinator stopped (%d lane(s) open)", len(lanes))

    async def _drain(self, conversation_id: str, lane: _ConversationLane) -> None:
        try:
            while lane.pending:
                job = lane.pending.popleft()
                lane.current = job
                try:
                    value = await job.factory()
                except Exception as exc:
                    if not job.future.done():
                        job.future.set_exception(exc)
                else:
                    if not job.future.done():
                        job.future.set_result(value)
                lane.current = None
        finally:
            if self._lanes.get(conversation_id) is lane:
                del self._lanes[conversation_id]


class TurnCancellationRegistry:
    """Cancel flags for in-flight turns, keyed by conversation.

    A stop request sets the flag of every turn registered for the
    conversation, including turns still queued behind the active one.
    """

    def __init__(self) -> None:
        self._events: dict[str, set[asyncio.Event]] = {}

    def register(self, conversation_id: str) -> asyncio.Event:
        cancel_event = asyncio.Event()
        self._events.setdefault(conversation_id, set()).add(cancel_event)
        return cancel_event

    def release(self, conversation_id: str, cancel_event: asyncio.Event) -> None:
        events = self._events.get(conversation_id)
        if events is None:
            return
        events.discard(cancel_event)
        if not events:
            self._events.pop(conversation_id, None)

    def cancel(self, conversation_id: str) -> bool:
        events = self._events.get(conversation_id)
        if not events:
            return False
        for cancel_event in events:
            cancel_event.set()
        logger.info("Stop requested for conversation %s (%d turn(s))", conversation_id, len(events))
        return True

    def cancel_all(self) -> int:
        count = 0
        for conversation_id in list(self._events):
            if self.cancel(conversation_id):
                count += 1
        return count
