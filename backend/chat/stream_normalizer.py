"""Turn a provider fragment stream into discrete turn events.

One ``StreamNormalizer`` covers one provider stream (one model response).
It is a small state machine::

    idle -> reasoning -> reasoning_to_content -> content -> terminal
                \\________________ tool_pending ______________/

Guarantees:

* ``ReasoningFinalized`` is emitted at most once, carrying the whole
  reasoning text, and always before the first ``MessageChunk``; when the
  stream ends without content it is emitted at end of turn instead.
* ``ToolExecution`` is emitted as soon as a tool call starts, in arrival
  order, unless its id is already in the shared seen-set or was already
  emitted in this stream. Arguments keep streaming into the turn arena and
  are read back through ``pending_tool_calls()``.
* ``FinalResponse`` is emitted at end of turn only if content arrived.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Callable, Set
from dataclasses import dataclass, field
from typing import Any

from chat.events import (
    STOP_REASON_END_TURN,
    STOP_REASONS,
    FinalResponse,
    MessageChunk,
    ReasoningChunk,
    ReasoningFinalized,
    ToolExecution,
    TurnEvent,
    UsageReport,
)
from chat.llm_client import StreamFragment, ToolCall
from chat.state_machine import (
    STATE_CONTENT,
    STATE_IDLE,
    STATE_REASONING,
    STATE_REASONING_TO_CONTENT,
    STATE_TERMINAL,
    STATE_TOOL_PENDING,
    transition_state,
)

logger = logging.getLogger(__name__)


@dataclass
class ToolCallAssembly:
    id: str
    name: str
    block_index: int
    args_parts: list[str] = field(default_factory=list)
    done: bool = False
    suppressed: bool = False

    @property
    def partial_args_json(self) -> str:
        return "".join(self.args_parts)

    def parsed_arguments(self) -> dict[str, Any]:
        raw_json = self.partial_args_json
        if not raw_json.strip():
            return {}
        try:
            arguments = json.loads(raw_json)
        except json.JSONDecodeError:
            return {"_raw": raw_json}
        if not isinstance(arguments, dict):
            return {"_raw": raw_json}
        return arguments


@dataclass
class TurnAccumulator:
    """Per-stream buffers. The tool arena is a list indexed by block index."""

    reasoning_parts: list[str] = field(default_factory=list)
    content_parts: list[str] = field(default_factory=list)
    tool_blocks: list[ToolCallAssembly | None] = field(default_factory=list)
    emitted_tool_ids: set[str] = field(default_factory=set)
    reasoning_finalized: bool = False

    @property
    def reasoning_text(self) -> str:
        return "".join(self.reasoning_parts)

    @property
    def content_text(self) -> str:
        return "".join(self.content_parts)

    def block(self, block_index: int) -> ToolCallAssembly | None:
        if 0 <= block_index < len(self.tool_blocks):
            return self.tool_blocks[block_index]
        return None

    def place(self, assembly: ToolCallAssembly) -> None:
        index = assembly.block_index
        if index >= len(self.tool_blocks):
            self.tool_blocks.extend([None] * (index + 1 - len(self.tool_blocks)))
        self.tool_blocks[index] = assembly

    def assemblies(self) -> list[ToolCallAssembly]:
        return [block for block in self.tool_blocks if block is not None]


class StreamNormalizer:
    def __init__(
        self,
        *,
        seen_tool_ids: Set[str] = frozenset(),
        turn_id: str = "turn",
        debug_log: Callable[..., None] | None = None,
    ) -> None:
        # Read-only view: the orchestrator marks ids after it has persisted them.
        self._seen_tool_ids = seen_tool_ids
        self._turn_id = turn_id
        self._debug_log = debug_log
        self.accumulator = TurnAccumulator()
        self.state = STATE_IDLE
        self.transitions: list[dict[str, Any]] = []
        self.stop_reason: str | None = None
        self._block_by_tool_id: dict[str, int] = {}
        self._tool_order: list[int] = []
        self._last_tool_block: int | None = None

    # ---- public API ------------------------------------------------------------

    @property
    def terminal(self) -> bool:
        return self.state == STATE_TERMINAL

    @property
    def content(self) -> str:
        return self.accumulator.content_text

    @property
    def reasoning(self) -> str:
        return self.accumulator.reasoning_text

    def feed(self, fragment: StreamFragment) -> list[TurnEvent]:
        if self.terminal:
            logger.warning(
                "Ignoring %s fragment after end of turn %s", fragment.type, self._turn_id
            )
            return []

        if fragment.type == "reasoning":
            return self._on_reasoning(fragment)
        if fragment.type == "text":
            return self._on_text(fragment)
        if fragment.type == "tool_call_start":
            return self._on_tool_start(fragment)
        if fragment.type == "tool_call_delta":
            self._on_tool_delta(fragment)
            return []
        if fragment.type == "tool_call_done":
            self._on_tool_done(fragment)
            return []
        if fragment.type == "usage":
            return [
                UsageReport(
                    input_tokens=int(fragment.input_tokens or 0),
                    output_tokens=int(fragment.output_tokens or 0),
                )
            ]
        if fragment.type == "stop":
            self._record_stop_reason(fragment.stop_reason)
            return []
        if fragment.type == "end":
            return self.finish(fragment.stop_reason)

        logger.debug("Ignoring unknown fragment type %r", fragment.type)
        return []

    def finish(self, stop_reason: str | None = None) -> list[TurnEvent]:
        if self.terminal:
            return []
        if stop_reason:
            self._record_stop_reason(stop_reason)

        events: list[TurnEvent] = []
        acc = self.accumulator
        if acc.reasoning_parts and not acc.reasoning_finalized:
            events.append(self._finalize_reasoning())
        if acc.content_parts:
            events.append(
                FinalResponse(
                    content=acc.content_text,
                    stop_reason=self.stop_reason or STOP_REASON_END_TURN,
                )
            )

        self._move(STATE_TERMINAL, "end_of_turn")
        return events

    async def normalize(self, stream: AsyncIterator[StreamFragment]) -> AsyncIterator[TurnEvent]:
        async for fragment in stream:
            for event in self.feed(fragment):
                yield event
            if self.terminal:
                return
        for event in self.finish():
            yield event

    def pending_tool_calls(self) -> list[ToolCall]:
        """Emitted tool calls in arrival order, with whatever arguments have arrived."""
        calls: list[ToolCall] = []
        for block_index in self._tool_order:
            assembly = self.accumulator.block(block_index)
            if assembly is None or assembly.suppressed:
                continue
            calls.append(
                ToolCall(
                    id=assembly.id,
                    name=assembly.name,
                    arguments=assembly.parsed_arguments(),
                )
            )
        return calls

    def tool_call_arguments(self, tool_use_id: str) -> dict[str, Any] | None:
        block_index = self._block_by_tool_id.get(tool_use_id)
        if block_index is None:
            return None
        assembly = self.accumulator.block(block_index)
        if assembly is None or assembly.id != tool_use_id:
            return None
        return assembly.parsed_arguments()

    # ---- handlers ----------------------------------------------------------------

    def _on_reasoning(self, fragment: StreamFragment) -> list[TurnEvent]:
        delta = fragment.text or ""
        if not delta:
            return []
        self.accumulator.reasoning_parts.append(delta)
        self._move(STATE_REASONING, "reasoning_fragment")
        return [ReasoningChunk(content=delta, block_index=fragment.block_index)]

    def _on_text(self, fragment: StreamFragment) -> list[TurnEvent]:
        delta = fragment.text or ""
        if not delta:
            return []

        events: list[TurnEvent] = []
        acc = self.accumulator
        if acc.reasoning_parts and not acc.reasoning_finalized:
            self._move(STATE_REASONING_TO_CONTENT, "first_content_after_reasoning")
            events.append(self._finalize_reasoning())

        acc.content_parts.append(delta)
        self._move(STATE_CONTENT, "content_fragment")
        events.append(MessageChunk(content=delta, block_index=fragment.block_index))
        return events

    def _on_tool_start(self, fragment: StreamFragment) -> list[TurnEvent]:
        block_index = fragment.block_index
        existing = self.accumulator.block(block_index)
        if existing is not None and fragment.tool_call_id in (None, existing.id):
            # Repeated start for the same block; keep the first name we saw.
            if not existing.name and fragment.tool_name:
                existing.name = fragment.tool_name
            return []
        if existing is not None:
            block_index = len(self.accumulator.tool_blocks)

        tool_call_id = (fragment.tool_call_id or "").strip() or (
            f"call_{self._turn_id}_{block_index}"
        )
        assembly = ToolCallAssembly(
            id=tool_call_id,
            name=(fragment.tool_name or "").strip(),
            block_index=block_index,
        )
        self.accumulator.place(assembly)
        self._block_by_tool_id.setdefault(tool_call_id, block_index)
        self._last_tool_block = block_index

        acc = self.accumulator
        if tool_call_id in self._seen_tool_ids or tool_call_id in acc.emitted_tool_ids:
            assembly.suppressed = True
            logger.debug("Dropping duplicate tool call %s", tool_call_id)
            return []

        acc.emitted_tool_ids.add(tool_call_id)
        self._tool_order.append(block_index)
        self._move(STATE_TOOL_PENDING, f"tool_call_start:{assembly.name}")
        return [
            ToolExecution(
                tool_use_id=tool_call_id,
                tool_name=assembly.name,
                input={},
                block_index=block_index,
            )
        ]

    def _resolve_assembly(self, fragment: StreamFragment) -> ToolCallAssembly | None:
        raw_id = (fragment.tool_call_id or "").strip()
        by_index = self.accumulator.block(fragment.block_index)
        if by_index is not None and (not raw_id or raw_id == by_index.id):
            return by_index

        if raw_id and raw_id in self._block_by_tool_id:
            return self.accumulator.block(self._block_by_tool_id[raw_id])

        # Providers may label deltas with an item id that differs from the call id.
        if self._last_tool_block is not None:
            assembly = self.accumulator.block(self._last_tool_block)
            if assembly is not None and raw_id:
                self._block_by_tool_id[raw_id] = assembly.block_index
            return assembly
        return None

    def _on_tool_delta(self, fragment: StreamFragment) -> None:
        args_delta = fragment.arguments_delta or ""
        if not args_delta:
            return
        assembly = self._resolve_assembly(fragment)
        if assembly is None:
            logger.warning(
                "Tool argument delta without a started tool call (id=%s)",
                fragment.tool_call_id,
            )
            return
        assembly.args_parts.append(args_delta)

    def _on_tool_done(self, fragment: StreamFragment) -> None:
        assembly = self._resolve_assembly(fragment)
        if assembly is not None:
            assembly.done = True

    # ---- helpers -------------------------------------------------------------------

    def _finalize_reasoning(self) -> ReasoningFinalized:
        self.accumulator.reasoning_finalized = True
        return ReasoningFinalized(content=self.accumulator.reasoning_text, block_index=0)

    def _record_stop_reason(self, stop_reason: str | None) -> None:
        if not stop_reason:
            return
        if stop_reason not in STOP_REASONS:
            logger.warning("Unrecognized stop reason %r", stop_reason)
        self.stop_reason = stop_reason

    def _move(self, to_state: str, reason: str) -> None:
        self.state = transition_state(
            current_state=self.state,
            to_state=to_state,
            reason=reason,
            transitions=self.transitions,
            turn_id=self._turn_id,
            logger=logger,
            debug_log=self._debug_log,
        )
