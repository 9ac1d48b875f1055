from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from chat.errors import ProviderStreamError
from chat.events import STOP_REASON_END_TURN, STOP_REASON_MAX_TOKENS, STOP_REASON_TOOL_USE
from chat.llm_client import ChatMessage, StreamFragment, ToolDefinition

logger = logging.getLogger(__name__)

_INCOMPLETE_STOP_REASONS = {
    "max_output_tokens": STOP_REASON_MAX_TOKENS,
    "content_filter": "refusal",
}


def to_responses_input(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Flatten chat history into Responses API input items."""
    items: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "tool":
            items.append(
                {
                    "type": "function_call_output",
                    "call_id": message.tool_call_id or "",
                    "output": message.content,
                }
            )
            continue

        if message.content or not message.tool_calls:
            items.append({"role": message.role, "content": message.content})
        for tool_call in message.tool_calls:
            items.append(
                {
                    "type": "function_call",
                    "call_id": tool_call.id,
                    "name": tool_call.name,
                    "arguments": json.dumps(tool_call.arguments or {}, ensure_ascii=True),
                }
            )
    return items


def _usage_fragment(response: Any) -> StreamFragment | None:
    usage = getattr(response, "usage", None)
    if usage is None:
        return None
    return StreamFragment(
        type="usage",
        input_tokens=int(getattr(usage, "input_tokens", 0) or 0),
        output_tokens=int(getattr(usage, "output_tokens", 0) or 0),
    )


def _has_function_calls(response: Any) -> bool:
    for item in getattr(response, "output", None) or []:
        if getattr(item, "type", "") == "function_call":
            return True
    return False


@dataclass(frozen=True)
class OpenAiAdapter:
    model: str
    api_key: str | None = None
    reasoning_effort: str | None = None

    async def generate_stream(
        self,
        *,
        messages: list[ChatMessage],
        tools: list[ToolDefinition],
        max_output_tokens: int | None = None,
    ) -> AsyncIterator[StreamFragment]:
        """Stream one response from the OpenAI Responses API as ``StreamFragment``s.

        Event mapping:
          - ``response.reasoning_summary_text.delta``  -> ``reasoning``
          - ``response.output_text.delta``             -> ``text``
          - ``response.output_item.added`` (function)  -> ``tool_call_start``
          - ``response.function_call_arguments.delta`` -> ``tool_call_delta``
          - ``response.function_call_arguments.done``  -> ``tool_call_done``
          - ``response.completed`` / ``response.incomplete`` -> ``usage``, ``stop``, ``end``

        Argument deltas carry the output item id, which is mapped back to the
        call id announced in ``output_item.added``.
        """
        try:
            from openai import AsyncOpenAI
        except ModuleNotFoundError as exc:
            raise RuntimeError(
                "OpenAI SDK not installed. Add dependency: `openai`."
            ) from exc

        client = AsyncOpenAI(api_key=self.api_key)
        request: dict[str, Any] = {
            "model": self.model,
            "input": to_responses_input(messages),
            "max_output_tokens": max_output_tokens,
            "stream": True,
        }
        if tools:
            request["tools"] = [
                {
                    "type": "function",
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.input_schema,
                }
                for t in tools
            ]
            request["tool_choice"] = "auto"
        if self.reasoning_effort:
            request["reasoning"] = {"effort": self.reasoning_effort, "summary": "auto"}

        stream = await client.responses.create(**request)
        call_id_by_item: dict[str, str] = {}

        async for event in stream:
            event_type = getattr(event, "type", "")

            if event_type == "response.reasoning_summary_text.delta":
                delta = getattr(event, "delta", "")
                if delta:
                    yield StreamFragment(
                        type="reasoning",
                        text=delta,
                        block_index=int(getattr(event, "output_index", 0) or 0),
                        raw=event,
                    )
                continue

            if event_type == "response.output_text.delta":
                delta = getattr(event, "delta", "")
                if delta:
                    yield StreamFragment(
                        type="text",
                        text=delta,
                        block_index=int(getattr(event, "output_index", 0) or 0),
                        raw=event,
                    )
                continue

            if event_type == "response.output_item.added":
                item = getattr(event, "item", None)
                if getattr(item, "type", "") != "function_call":
                    continue
                item_id = getattr(item, "id", None)
                call_id = getattr(item, "call_id", None) or item_id
                if item_id and call_id:
                    call_id_by_item[item_id] = call_id
                yield StreamFragment(
                    type="tool_call_start",
                    tool_call_id=call_id,
                    tool_name=getattr(item, "name", ""),
                    block_index=int(getattr(event, "output_index", 0) or 0),
                    raw=event,
                )
                continue

            if event_type == "response.function_call_arguments.delta":
                delta = getattr(event, "delta", "")
                if delta:
                    item_id = getattr(event, "item_id", None)
                    yield StreamFragment(
                        type="tool_call_delta",
                        tool_call_id=call_id_by_item.get(item_id or "", item_id),
                        arguments_delta=delta,
                        block_index=int(getattr(event, "output_index", 0) or 0),
                    )
                continue

            if event_type == "response.function_call_arguments.done":
                item_id = getattr(event, "item_id", None)
                yield StreamFragment(
                    type="tool_call_done",
                    tool_call_id=call_id_by_item.get(item_id or "", item_id),
                    block_index=int(getattr(event, "output_index", 0) or 0),
                )
                continue

            if event_type in {"response.completed", "response.incomplete"}:
                response = getattr(event, "response", None)
                usage = _usage_fragment(response)
                if usage is not None:
                    yield usage

                if event_type == "response.incomplete":
                    details = getattr(response, "incomplete_details", None)
                    reason = getattr(details, "reason", None) or "max_output_tokens"
                    stop_reason = _INCOMPLETE_STOP_REASONS.get(reason, STOP_REASON_MAX_TOKENS)
                elif _has_function_calls(response):
                    stop_reason = STOP_REASON_TOOL_USE
                else:
                    stop_reason = STOP_REASON_END_TURN
                yield StreamFragment(type="stop", stop_reason=stop_reason)
                yield StreamFragment(type="end")
                return

            if event_type in {"response.failed", "error"}:
                response = getattr(event, "response", None)
                error = getattr(response, "error", None) or event
                message = getattr(error, "message", None) or str(error)
                raise ProviderStreamError(f"OpenAI stream failed: {message}")

        logger.warning("OpenAI stream for %s closed without a completion event", self.model)
        yield StreamFragment(type="end")
