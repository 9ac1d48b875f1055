"""
Chat runtime services - builds the turn pipeline once and owns its lifecycle.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any

from chat import build_llm_client
from chat.approvals import ApprovalGate, ApprovalNotifier
from chat.engine import TurnOrchestrator, TurnResult
from chat.event_store import EventLog
from chat.events import StoredEvent
from chat.jobs import ConversationTurnCoordinator, TurnCancellationRegistry
from chat.llm_client import LlmClient
from chat.materializer import rebuild_from_events, replace_conversation_messages
from chat.persistence_queue import PersistenceQueue
from chat.runtime.counters import CounterBackend, InMemoryCounterBackend
from chat.runtime.event_writer import EventWriter, NotificationCallback
from chat.runtime.rate_limit import ConversationRateLimiter
from chat.runtime.tool_dispatcher import ToolDispatcher
from chat.sequence import SequenceAllocator
from chat.tooling import ToolExecutor, ToolRegistry
from services.settings import RuntimeSettings

logger = logging.getLogger(__name__)


@dataclass
class ChatRuntime:
    settings: RuntimeSettings
    counter: CounterBackend
    allocator: SequenceAllocator
    event_log: EventLog
    rate_limiter: ConversationRateLimiter
    queue: PersistenceQueue
    approval_gate: ApprovalGate
    event_writer: EventWriter
    dispatcher: ToolDispatcher
    orchestrator: TurnOrchestrator
    coordinator: ConversationTurnCoordinator
    cancellations: TurnCancellationRegistry

    async def start(self) -> None:
        await self.queue.start()
        self.approval_gate.expire_stale()

    async def shutdown(self) -> None:
        cancelled = self.cancellations.cancel_all()
        if cancelled:
            logger.info("Stopping %d in-flight conversation(s) for shutdown", cancelled)
        self.approval_gate.shutdown()
        await self.coordinator.shutdown()
        await self.queue.shutdown(
            drain=True, timeout=self.settings.queue_drain_timeout_seconds
        )

    async def run_turn(
        self,
        conversation_id: str,
        message: str,
        on_notification: NotificationCallback | None = None,
    ) -> TurnResult:
        cancel_event = self.cancellations.register(conversation_id)
        try:
            return await self.coordinator.run(
                conversation_id,
                lambda: self.orchestrator.run_turn(
                    conversation_id,
                    message,
                    on_notification=on_notification,
                    cancel_event=cancel_event,
                ),
            )
        finally:
            self.cancellations.release(conversation_id, cancel_event)

    def stop_turn(self, conversation_id: str) -> bool:
        return self.cancellations.cancel(conversation_id)

    async def rebuild_read_model(self, conversation_id: str) -> int:
        """Replay the log into ``messages``; the result matches what the live queue writes.

        Raises ``ConversationBusyError`` while a turn is running or queued.
        """

        async def rebuild() -> int:
            events: list[StoredEvent] = []
            await self.event_log.replay(conversation_id, events.append)
            count = replace_conversation_messages(conversation_id, rebuild_from_events(events))
            for event in events:
                self.event_log.mark_processed(event.id)
            logger.info("Rebuilt %d messages for conversation %s", count, conversation_id)
            return count

        return await self.coordinator.run_when_idle(conversation_id, rebuild, kind="rebuild")

    async def delete_conversation(self, conversation_id: str) -> dict[str, int]:
        async def purge() -> dict[str, int]:
            counts = self.event_log.purge_conversation(conversation_id)
            await self.allocator.forget(conversation_id)
            self.orchestrator.forget_conversation(conversation_id)
            return counts

        return await self.coordinator.run_when_idle(conversation_id, purge, kind="purge")

    async def queue_status(self, conversation_id: str | None = None) -> dict[str, Any]:
        status: dict[str, Any] = {
            "queue": self.queue.stats(),
            "failed_jobs": self.queue.failed_jobs(),
            "sequence_fallbacks": self.allocator.fallback_count,
            "degraded_writes": self.event_writer.degraded_writes,
        }
        if conversation_id is not None:
            limit = await self.queue.rate_limit_status(conversation_id)
            status["rate_limit"] = limit.to_dict()
        return status


def build_chat_runtime(
    settings: RuntimeSettings | None = None,
    *,
    llm_client: LlmClient | None = None,
    tool_executor: ToolExecutor | None = None,
    tool_registry: ToolRegistry | None = None,
    counter: CounterBackend | None = None,
    approval_notifier: ApprovalNotifier | None = None,
) -> ChatRuntime:
    settings = settings or RuntimeSettings.from_env()
    counter = counter or InMemoryCounterBackend()
    registry = tool_registry or ToolRegistry()
    if llm_client is None:
        llm_client = build_llm_client(
            provider=settings.llm_provider, model=settings.llm_model
        )

    allocator = SequenceAllocator(counter, ttl_seconds=settings.counter_ttl_seconds)
    event_log = EventLog(allocator)
    rate_limiter = ConversationRateLimiter(
        counter,
        max_jobs=settings.rate_limit_max_jobs,
        window_seconds=settings.rate_limit_window_seconds,
    )
    queue = PersistenceQueue(
        event_log=event_log,
        rate_limiter=rate_limiter,
        concurrency=settings.queue_concurrency,
        max_attempts=settings.queue_max_attempts,
        backoff_base_seconds=settings.queue_backoff_seconds,
    )
    approval_gate = ApprovalGate(
        notifier=approval_notifier,
        default_ttl_seconds=settings.approval_ttl_seconds,
    )
    event_writer = EventWriter(event_log=event_log, queue=queue)
    dispatcher = ToolDispatcher(
        executor=tool_executor or registry,
        approval_gate=approval_gate,
        write_prefixes=settings.write_tool_prefixes,
    )
    orchestrator = TurnOrchestrator(
        llm_client=llm_client,
        event_writer=event_writer,
        tool_dispatcher=dispatcher,
        tools=registry.definitions(),
        max_turns=settings.max_turns,
        max_output_tokens=settings.max_output_tokens,
    )
    return ChatRuntime(
        settings=settings,
        counter=counter,
        allocator=allocator,
        event_log=event_log,
        rate_limiter=rate_limiter,
        queue=queue,
        approval_gate=approval_gate,
        event_writer=event_writer,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        coordinator=ConversationTurnCoordinator(),
        cancellations=TurnCancellationRegistry(),
    )


_runtime_lock = threading.Lock()
_runtime_loop: asyncio.AbstractEventLoop | None = None
_chat_runtime: ChatRuntime | None = None


def install_chat_runtime(runtime: ChatRuntime | None) -> None:
    """Replace the process runtime (used by app startup and tests)."""
    global _runtime_loop, _chat_runtime
    with _runtime_lock:
        _chat_runtime = runtime
        _runtime_loop = None


def get_chat_runtime() -> ChatRuntime:
    global _runtime_loop, _chat_runtime

    loop = asyncio.get_running_loop()
    with _runtime_lock:
        if _chat_runtime is not None and _runtime_loop in (None, loop):
            _runtime_loop = loop
            return _chat_runtime

        _runtime_loop = loop
        _chat_runtime = build_chat_runtime()
        return _chat_runtime


async def start_chat_runtime() -> None:
    await get_chat_runtime().start()


async def shutdown_chat_runtime() -> None:
    with _runtime_lock:
        runtime = _chat_runtime
    if runtime is not None:
        await runtime.shutdown()
