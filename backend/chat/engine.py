from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from debug_log import debug_log as _debug_log
from chat.approvals import APPROVAL_STATUS_REJECTED, ApprovalRequest
from chat.errors import ProviderStreamError
from chat.events import (
    EVENT_APPROVAL_COMPLETED,
    EVENT_APPROVAL_REQUESTED,
    EVENT_ERROR,
    EVENT_MESSAGE_SENT,
    EVENT_REASONING_COMPLETED,
    EVENT_SESSION_STARTED,
    EVENT_TOOL_COMPLETED,
    EVENT_TOOL_REQUESTED,
    EVENT_TURN_CANCELLED,
    EVENT_USER_MESSAGE,
    STOP_REASON_CANCELLED,
    STOP_REASON_END_TURN,
    STOP_REASON_MAX_TOKENS,
    STOP_REASON_MAX_TURNS,
    ApprovalRequested,
    ApprovalResolved,
    FinalResponse,
    MessageChunk,
    ReasoningChunk,
    ReasoningFinalized,
    StoredEvent,
    ToolExecution,
    TurnCancelled,
    TurnError,
    TurnEvent,
    UsageReport,
)
from chat.llm_client import LlmClient, StreamFragment, ToolCall, ToolDefinition
from chat.message_builder import build_llm_messages_from_events
from chat.runtime.event_writer import EventWriter, NotificationCallback, notify
from chat.runtime.tool_dispatcher import ApprovalVerdict, ToolDispatcher, ToolOutcome
from chat.stream_normalizer import StreamNormalizer
from chat.tooling import TOOL_CANCELLED_MESSAGE, TOOL_TRUNCATED_MESSAGE
from meta import new_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_TURNS = 20
STOP_REASON_ERROR = "error"


@dataclass
class TurnResult:
    conversation_id: str
    turn_id: str
    stop_reason: str
    content: str = ""
    iterations: int = 0
    events: list[StoredEvent] = field(default_factory=list)
    error: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.stop_reason == STOP_REASON_CANCELLED

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "turn_id": self.turn_id,
            "stop_reason": self.stop_reason,
            "content": self.content,
            "iterations": self.iterations,
            "event_count": len(self.events),
            "error": self.error,
        }


@dataclass
class _StreamPass:
    """Slots and buffers for one provider response."""

    normalizer: StreamNormalizer
    reasoning_seq: int | None = None
    message_seq: int | None = None
    tool_seqs: dict[str, int] = field(default_factory=dict)
    final: FinalResponse | None = None
    usage: UsageReport | None = None
    cancelled: bool = False
    error: str | None = None


class _TurnCancelledSignal(Exception):
    pass


async def _fragments_until_cancelled(
    open_stream: Callable[[], AsyncIterator[StreamFragment]],
    cancel_event: asyncio.Event | None,
) -> AsyncIterator[StreamFragment]:
    """Yield provider fragments until the stream ends or ``cancel_event`` is set.

    Anything the provider raises comes out as ``ProviderStreamError``.
    """
    try:
        iterator = open_stream().__aiter__()
    except Exception as exc:
        raise ProviderStreamError(str(exc) or type(exc).__name__) from exc

    waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
    try:
        while True:
            step = asyncio.ensure_future(iterator.__anext__())
            if waiter is not None:
                await asyncio.wait({step, waiter}, return_when=asyncio.FIRST_COMPLETED)
                if not step.done():
                    step.cancel()
                    try:
                        await step
                    except (asyncio.CancelledError, StopAsyncIteration):
                        pass
                    except Exception as exc:
                        logger.debug("Provider stream raised while being cancelled: %s", exc)
                    return
            try:
                fragment = await step
            except StopAsyncIteration:
                return
            except Exception as exc:
                raise ProviderStreamError(str(exc) or type(exc).__name__) from exc
            yield fragment
            if cancel_event is not None and cancel_event.is_set():
                return
    finally:
        if waiter is not None:
            waiter.cancel()
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception as exc:
                logger.debug("Provider stream did not close cleanly: %s", exc)


async def _unless_cancelled(
    awaitable: Awaitable[T],
    cancel_event: asyncio.Event | None,
) -> T:
    if cancel_event is None:
        return await awaitable
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    if not task.done():
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise _TurnCancelledSignal()
    return task.result()


class TurnOrchestrator:
    """Runs one user turn: provider stream, tool loop, ordered persistence.

    Every durable event goes through ``EventWriter`` (log append, then read
    model). Live notifications are forwarded as they happen; persisted ones
    carry the event id and sequence number. Sequence slots are reserved when
    a block starts streaming, so the log keeps the order the provider produced
    even when the payload is only complete later.
    """

    def __init__(
        self,
        *,
        llm_client: LlmClient,
        event_writer: EventWriter,
        tool_dispatcher: ToolDispatcher,
        tools: list[ToolDefinition] | None = None,
        max_turns: int = DEFAULT_MAX_TURNS,
        max_output_tokens: int | None = None,
        debug_log: Callable[..., None] | None = _debug_log,
    ) -> None:
        self.llm_client = llm_client
        self._writer = event_writer
        self._event_log = event_writer.event_log
        self._allocator = event_writer.event_log.allocator
        self._dispatcher = tool_dispatcher
        self.tools = list(tools or [])
        self.max_turns = max(1, int(max_turns))
        self.max_output_tokens = max_output_tokens
        self._debug_log = debug_log
        self._seen_tool_ids: dict[str, set[str]] = {}

    async def run_turn(
        self,
        conversation_id: str,
        message: str,
        on_notification: NotificationCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnResult:
        if not message or not message.strip():
            raise ValueError("message must not be empty")

        turn_id = new_id("turn")
        result = TurnResult(
            conversation_id=conversation_id,
            turn_id=turn_id,
            stop_reason=STOP_REASON_END_TURN,
        )

        if self._debug_log is not None:
            self._debug_log(
                run_id=turn_id,
                hypothesis_id="TURN",
                location="backend/chat/engine.py:run_turn:start",
                message="Starting turn",
                data={
                    "conversation_id": conversation_id,
                    "message_preview": message[:200],
                    "max_turns": self.max_turns,
                },
            )

        history = self._event_log.get_events(conversation_id)
        seen = self._seen_for(conversation_id, history)
        if not history:
            await self._persist(
                result,
                EVENT_SESSION_STARTED,
                {"turn_id": turn_id, "model": getattr(self.llm_client, "model", None)},
            )
        await self._persist(
            result,
            EVENT_USER_MESSAGE,
            {"content": message, "turn_id": turn_id},
        )

        for iteration in range(1, self.max_turns + 1):
            result.iterations = iteration
            if cancel_event is not None and cancel_event.is_set():
                await self._record_cancelled(result, None, on_notification)
                return result

            stream_pass = await self._run_stream(
                conversation_id,
                turn_id=f"{turn_id}:{iteration}",
                seen=seen,
                result=result,
                on_notification=on_notification,
                cancel_event=cancel_event,
            )

            if stream_pass.cancelled:
                await self._record_cancelled(result, stream_pass, on_notification)
                return result
            if stream_pass.error is not None:
                await self._record_provider_error(result, stream_pass, on_notification)
                return result

            if stream_pass.final is not None:
                result.content = stream_pass.final.content
            tool_calls = stream_pass.normalizer.pending_tool_calls()
            if not tool_calls:
                result.stop_reason = stream_pass.normalizer.stop_reason or STOP_REASON_END_TURN
                logger.info(
                    "Turn %s finished after %d iteration(s) (conversation=%s, stop_reason=%s)",
                    turn_id,
                    iteration,
                    conversation_id,
                    result.stop_reason,
                )
                return result

            if stream_pass.normalizer.stop_reason == STOP_REASON_MAX_TOKENS:
                # Arguments may be cut off mid-object; never execute them.
                await self._record_truncated_tools(
                    conversation_id, tool_calls, result, on_notification
                )
                return result

            try:
                await self._run_tools(
                    conversation_id,
                    tool_calls,
                    result=result,
                    on_notification=on_notification,
                    cancel_event=cancel_event,
                )
            except _TurnCancelledSignal:
                await self._record_cancelled(result, None, on_notification)
                return result

        await self._record_max_turns(result, on_notification)
        return result

    # ---- provider stream -------------------------------------------------------

    async def _run_stream(
        self,
        conversation_id: str,
        *,
        turn_id: str,
        seen: set[str],
        result: TurnResult,
        on_notification: NotificationCallback | None,
        cancel_event: asyncio.Event | None,
    ) -> _StreamPass:
        messages = build_llm_messages_from_events(self._event_log.get_events(conversation_id))
        stream_pass = _StreamPass(
            normalizer=StreamNormalizer(
                seen_tool_ids=seen,
                turn_id=turn_id,
                debug_log=self._debug_log,
            )
        )
        normalizer = stream_pass.normalizer

        def open_stream() -> AsyncIterator[StreamFragment]:
            return self.llm_client.generate_stream(
                messages=messages,
                tools=self.tools,
                max_output_tokens=self.max_output_tokens,
            )

        fragments = _fragments_until_cancelled(open_stream, cancel_event)
        try:
            async with contextlib.aclosing(fragments):
                async for fragment in fragments:
                    for turn_event in normalizer.feed(fragment):
                        await self._on_stream_event(
                            conversation_id, stream_pass, turn_event, result, on_notification
                        )
                    if normalizer.terminal:
                        break
        except ProviderStreamError as exc:
            logger.error("Provider stream failed for turn %s: %s", turn_id, exc)
            stream_pass.error = str(exc)
            return stream_pass

        if cancel_event is not None and cancel_event.is_set() and not normalizer.terminal:
            stream_pass.cancelled = True
            return stream_pass

        for turn_event in normalizer.finish():
            await self._on_stream_event(
                conversation_id, stream_pass, turn_event, result, on_notification
            )

        await self._persist_stream_results(conversation_id, stream_pass, result, on_notification)
        return stream_pass

    async def _on_stream_event(
        self,
        conversation_id: str,
        stream_pass: _StreamPass,
        turn_event: TurnEvent,
        result: TurnResult,
        on_notification: NotificationCallback | None,
    ) -> None:
        if isinstance(turn_event, ReasoningChunk):
            if stream_pass.reasoning_seq is None:
                stream_pass.reasoning_seq = await self._allocator.reserve_one(conversation_id)
            await notify(on_notification, turn_event)
            return

        if isinstance(turn_event, ReasoningFinalized):
            stored = await self._persist(
                result,
                EVENT_REASONING_COMPLETED,
                {"content": turn_event.content, "turn_id": result.turn_id},
                sequence_number=stream_pass.reasoning_seq,
            )
            await notify(on_notification, turn_event, stored)
            return

        if isinstance(turn_event, MessageChunk):
            if stream_pass.message_seq is None:
                stream_pass.message_seq = await self._allocator.reserve_one(conversation_id)
            await notify(on_notification, turn_event)
            return

        if isinstance(turn_event, ToolExecution):
            stream_pass.tool_seqs[turn_event.tool_use_id] = await self._allocator.reserve_one(
                conversation_id
            )
            await notify(on_notification, turn_event)
            return

        if isinstance(turn_event, FinalResponse):
            # Persisted once usage for the response is known.
            stream_pass.final = turn_event
            return

        if isinstance(turn_event, UsageReport):
            stream_pass.usage = turn_event
            await notify(on_notification, turn_event)
            return

        await notify(on_notification, turn_event)

    async def _persist_stream_results(
        self,
        conversation_id: str,
        stream_pass: _StreamPass,
        result: TurnResult,
        on_notification: NotificationCallback | None,
    ) -> None:
        normalizer = stream_pass.normalizer

        if stream_pass.final is not None:
            usage = stream_pass.usage
            stored = await self._persist(
                result,
                EVENT_MESSAGE_SENT,
                {
                    "content": stream_pass.final.content,
                    "stop_reason": stream_pass.final.stop_reason,
                    "model": getattr(self.llm_client, "model", None),
                    "input_tokens": usage.input_tokens if usage is not None else None,
                    "output_tokens": usage.output_tokens if usage is not None else None,
                    "turn_id": result.turn_id,
                },
                sequence_number=stream_pass.message_seq,
            )
            await notify(on_notification, stream_pass.final, stored)

        seen = self._seen_tool_ids.setdefault(conversation_id, set())
        for tool_call in normalizer.pending_tool_calls():
            await self._persist(
                result,
                EVENT_TOOL_REQUESTED,
                {
                    "tool_use_id": tool_call.id,
                    "tool_name": tool_call.name,
                    "tool_args": tool_call.arguments,
                    "turn_id": result.turn_id,
                },
                sequence_number=stream_pass.tool_seqs.get(tool_call.id),
            )
            seen.add(tool_call.id)

    # ---- tools -----------------------------------------------------------------

    async def _run_tools(
        self,
        conversation_id: str,
        tool_calls: list[ToolCall],
        *,
        result: TurnResult,
        on_notification: NotificationCallback | None,
        cancel_event: asyncio.Event | None,
    ) -> None:
        denials: dict[str, str] = {}
        open_approvals: dict[str, tuple[ToolCall, ApprovalRequest]] = {}
        try:
            for tool_call in self._dispatcher.approval_queue(tool_calls):
                verdict = await _unless_cancelled(
                    self._seek_approval(
                        conversation_id, tool_call, result, on_notification, open_approvals
                    ),
                    cancel_event,
                )
                if not verdict.approved:
                    denials[tool_call.id] = verdict.denial_message
        except _TurnCancelledSignal:
            for tool_call, request in list(open_approvals.values()):
                await self._dispatcher.abandon_approval(request.id)
                await self._record_approval_completed(
                    result,
                    tool_call,
                    request.id,
                    APPROVAL_STATUS_REJECTED,
                    "turn_cancelled",
                    on_notification,
                )
            open_approvals.clear()
            # Every tool_use_requested already in the log needs a paired result.
            await self._record_unrun_tools(
                conversation_id, tool_calls, TOOL_CANCELLED_MESSAGE, result, on_notification
            )
            raise

        reservation = await self._allocator.reserve_batch(conversation_id, len(tool_calls))

        async def on_outcome(index: int, outcome: ToolOutcome) -> None:
            stored = await self._persist(
                result,
                EVENT_TOOL_COMPLETED,
                {**outcome.to_payload(), "turn_id": result.turn_id},
                sequence_number=reservation[index],
            )
            await notify(on_notification, outcome.to_turn_event(), stored)

        await self._dispatcher.run_batch(tool_calls, denials=denials, on_outcome=on_outcome)

    async def _seek_approval(
        self,
        conversation_id: str,
        tool_call: ToolCall,
        result: TurnResult,
        on_notification: NotificationCallback | None,
        open_approvals: dict[str, tuple[ToolCall, ApprovalRequest]],
    ) -> ApprovalVerdict:
        async def on_opened(request: ApprovalRequest) -> None:
            open_approvals[request.id] = (tool_call, request)
            turn_event = ApprovalRequested(
                approval_id=request.id,
                tool_use_id=tool_call.id,
                tool_name=request.tool_name,
                args=request.args,
                change_summary=request.description or "",
                priority=request.priority,
                expires_at=request.expires_at,
            )
            stored = await self._persist(
                result,
                EVENT_APPROVAL_REQUESTED,
                {
                    "approval_id": request.id,
                    "tool_use_id": tool_call.id,
                    "tool_name": request.tool_name,
                    "args": request.args,
                    "change_summary": request.description,
                    "priority": request.priority,
                    "expires_at": request.expires_at,
                },
            )
            await notify(on_notification, turn_event, stored)

        verdict = await self._dispatcher.seek_approval(conversation_id, tool_call, on_opened)
        if verdict.approval_id is None:
            return verdict

        open_approvals.pop(verdict.approval_id, None)
        decision = "approved" if verdict.approved else (verdict.status or APPROVAL_STATUS_REJECTED)
        await self._record_approval_completed(
            result, tool_call, verdict.approval_id, decision, verdict.reason, on_notification
        )
        return verdict

    async def _record_approval_completed(
        self,
        result: TurnResult,
        tool_call: ToolCall,
        approval_id: str,
        decision: str,
        reason: str | None,
        on_notification: NotificationCallback | None,
    ) -> None:
        stored = await self._persist(
            result,
            EVENT_APPROVAL_COMPLETED,
            {
                "approval_id": approval_id,
                "tool_use_id": tool_call.id,
                "decision": decision,
                "reason": reason,
            },
        )
        await notify(
            on_notification,
            ApprovalResolved(
                approval_id=approval_id,
                tool_use_id=tool_call.id,
                decision=decision,
                reason=reason,
            ),
            stored,
        )

    async def _record_unrun_tools(
        self,
        conversation_id: str,
        tool_calls: list[ToolCall],
        error: str,
        result: TurnResult,
        on_notification: NotificationCallback | None,
    ) -> None:
        reservation = await self._allocator.reserve_batch(conversation_id, len(tool_calls))
        for index, tool_call in enumerate(tool_calls):
            outcome = ToolOutcome(tool_call=tool_call, success=False, error=error)
            stored = await self._persist(
                result,
                EVENT_TOOL_COMPLETED,
                {**outcome.to_payload(), "turn_id": result.turn_id},
                sequence_number=reservation[index],
            )
            await notify(on_notification, outcome.to_turn_event(), stored)

    # ---- terminal markers ------------------------------------------------------

    async def _record_cancelled(
        self,
        result: TurnResult,
        stream_pass: _StreamPass | None,
        on_notification: NotificationCallback | None,
    ) -> None:
        content = stream_pass.normalizer.content if stream_pass is not None else ""
        reasoning = stream_pass.normalizer.reasoning if stream_pass is not None else ""
        stored = await self._persist(
            result,
            EVENT_TURN_CANCELLED,
            {
                "content": content,
                "reasoning": reasoning,
                "turn_id": result.turn_id,
            },
            sequence_number=stream_pass.message_seq if stream_pass is not None else None,
        )
        result.stop_reason = STOP_REASON_CANCELLED
        result.content = content
        logger.info(
            "Turn %s cancelled (conversation=%s, partial_chars=%d)",
            result.turn_id,
            result.conversation_id,
            len(content),
        )
        await notify(on_notification, TurnCancelled(content=content, reasoning=reasoning), stored)

    async def _record_provider_error(
        self,
        result: TurnResult,
        stream_pass: _StreamPass,
        on_notification: NotificationCallback | None,
    ) -> None:
        message = stream_pass.error or "provider stream failed"
        stored = await self._persist(
            result,
            EVENT_ERROR,
            {
                "message": message,
                "code": "provider_error",
                "partial_content": stream_pass.normalizer.content,
                "turn_id": result.turn_id,
            },
        )
        result.stop_reason = STOP_REASON_ERROR
        result.error = message
        await notify(on_notification, TurnError(message=message, code="provider_error"), stored)

    async def _record_truncated_tools(
        self,
        conversation_id: str,
        tool_calls: list[ToolCall],
        result: TurnResult,
        on_notification: NotificationCallback | None,
    ) -> None:
        await self._record_unrun_tools(
            conversation_id, tool_calls, TOOL_TRUNCATED_MESSAGE, result, on_notification
        )
        message = "Response hit the output token limit while requesting tools"
        stored = await self._persist(
            result,
            EVENT_ERROR,
            {
                "message": message,
                "code": STOP_REASON_MAX_TOKENS,
                "stop_reason": STOP_REASON_MAX_TOKENS,
                "tool_use_ids": [tool_call.id for tool_call in tool_calls],
                "turn_id": result.turn_id,
            },
        )
        result.stop_reason = STOP_REASON_MAX_TOKENS
        result.error = message
        logger.warning(
            "Turn %s stopped at max_tokens with %d tool call(s) unrun (conversation=%s)",
            result.turn_id,
            len(tool_calls),
            result.conversation_id,
        )
        await notify(on_notification, TurnError(message=message, code=STOP_REASON_MAX_TOKENS), stored)

    async def _record_max_turns(
        self,
        result: TurnResult,
        on_notification: NotificationCallback | None,
    ) -> None:
        message = f"Stopped after reaching the maximum of {self.max_turns} turns"
        stored = await self._persist(
            result,
            EVENT_ERROR,
            {
                "message": message,
                "code": STOP_REASON_MAX_TURNS,
                "stop_reason": STOP_REASON_MAX_TURNS,
                "turn_id": result.turn_id,
            },
        )
        result.stop_reason = STOP_REASON_MAX_TURNS
        result.error = message
        logger.warning(
            "Turn %s hit the turn ceiling (conversation=%s, max_turns=%d)",
            result.turn_id,
            result.conversation_id,
            self.max_turns,
        )
        await notify(on_notification, TurnError(message=message, code=STOP_REASON_MAX_TURNS), stored)

    # ---- helpers ---------------------------------------------------------------

    async def _persist(
        self,
        result: TurnResult,
        event_type: str,
        payload: dict[str, Any],
        *,
        sequence_number: int | None = None,
    ) -> StoredEvent:
        stored = await self._writer.persist(
            result.conversation_id,
            event_type,
            payload,
            sequence_number=sequence_number,
        )
        result.events.append(stored)
        return stored

    def _seen_for(self, conversation_id: str, history: list[StoredEvent]) -> set[str]:
        seen = self._seen_tool_ids.get(conversation_id)
        if seen is None:
            seen = {
                str(event.payload.get("tool_use_id"))
                for event in history
                if event.type == EVENT_TOOL_REQUESTED and event.payload.get("tool_use_id")
            }
            self._seen_tool_ids[conversation_id] = seen
        return seen

    def forget_conversation(self, conversation_id: str) -> None:
        self._seen_tool_ids.pop(conversation_id, None)
