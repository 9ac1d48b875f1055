from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None


@dataclass(frozen=True)
class StreamFragment:
    """A single normalized piece of a provider streaming response.

    Fragment types:
      - ``"reasoning"``        – a reasoning/thinking delta (``text``)
      - ``"text"``             – a visible content delta (``text``)
      - ``"tool_call_start"``  – a new tool call (``tool_call_id``, ``tool_name``)
      - ``"tool_call_delta"``  – a piece of tool-call argument JSON
      - ``"tool_call_done"``   – the tool call's argument stream is finished
      - ``"usage"``            – token counts (``input_tokens``, ``output_tokens``)
      - ``"stop"``             – explicit stop reason (``stop_reason``)
      - ``"end"``              – the provider closed the turn
    """

    type: str
    text: str | None = None
    block_index: int = 0
    tool_call_id: str | None = None
    tool_name: str | None = None
    arguments_delta: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    stop_reason: str | None = None
    raw: Any | None = field(default=None, compare=False, repr=False)


class LlmClient(Protocol):
    model: str

    def generate_stream(
        self,
        *,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        max_output_tokens: int | None = None,
    ) -> AsyncIterator[StreamFragment]: ...
