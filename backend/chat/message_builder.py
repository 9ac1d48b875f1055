from __future__ import annotations

import json
from typing import Any

from chat.events import (
    EVENT_MESSAGE_SENT,
    EVENT_TOOL_COMPLETED,
    EVENT_TOOL_REQUESTED,
    EVENT_TURN_CANCELLED,
    EVENT_USER_MESSAGE,
    StoredEvent,
)
from chat.llm_client import ChatMessage, ToolCall

SYSTEM_PROMPT = """You are a helpful assistant with access to tools.

- Call tools when the user's request needs data or an action you cannot perform from memory.
- Tool arguments MUST be valid JSON matching the tool's schema.
- Tools whose names start with create_, update_, delete_, post_, put_ or patch_ change external state and need human approval. If an approval is denied, do not retry the same call; tell the user what was not done.
- After tool results arrive, answer the user directly and concisely."""

_TOOL_RESULT_MAX_CHARS = 8_000


def _truncate_text(value: Any, *, limit: int) -> str:
    text = str(value or "")
    if len(text) <= limit:
        return text
    return text[:limit] + "...(truncated)"


def _serialize_tool_result(payload: dict[str, Any]) -> str:
    if payload.get("success"):
        result = payload.get("tool_result")
        text = result if isinstance(result, str) else json.dumps(result, ensure_ascii=True, default=str)
    else:
        text = json.dumps(
            {"error": payload.get("error_message") or "tool failed"},
            ensure_ascii=True,
        )
    return _truncate_text(text, limit=_TOOL_RESULT_MAX_CHARS)


def build_llm_messages_from_events(
    events: list[StoredEvent],
    *,
    system_prompt: str = SYSTEM_PROMPT,
) -> list[ChatMessage]:
    """Rebuild provider history from the log, in sequence order.

    An assistant text followed by tool requests in the same response is
    folded into one assistant message carrying both. Tool requests with no
    recorded result are left out, since providers reject an unanswered call.
    """
    messages: list[ChatMessage] = [ChatMessage(role="system", content=system_prompt)]

    pending_text: str | None = None
    pending_tool_calls: list[ToolCall] = []

    def flush_assistant() -> None:
        nonlocal pending_text, pending_tool_calls
        if pending_text or pending_tool_calls:
            messages.append(
                ChatMessage(
                    role="assistant",
                    content=pending_text or "",
                    tool_calls=tuple(pending_tool_calls),
                )
            )
        pending_text = None
        pending_tool_calls = []

    answered = {
        str(event.payload.get("tool_use_id"))
        for event in events
        if event.type == EVENT_TOOL_COMPLETED and event.payload.get("tool_use_id")
    }

    for event in sorted(events, key=lambda e: e.sequence_number):
        payload = event.payload

        if event.type == EVENT_USER_MESSAGE:
            flush_assistant()
            content = payload.get("content")
            if content:
                messages.append(ChatMessage(role="user", content=str(content)))
            continue

        if event.type in {EVENT_MESSAGE_SENT, EVENT_TURN_CANCELLED}:
            flush_assistant()
            content = str(payload.get("content") or "").strip()
            pending_text = content or None
            continue

        if event.type == EVENT_TOOL_REQUESTED:
            if str(payload.get("tool_use_id")) not in answered:
                continue
            pending_tool_calls.append(
                ToolCall(
                    id=str(payload.get("tool_use_id") or event.id),
                    name=str(payload.get("tool_name") or ""),
                    arguments=dict(payload.get("tool_args") or {}),
                )
            )
            continue

        if event.type == EVENT_TOOL_COMPLETED:
            flush_assistant()
            messages.append(
                ChatMessage(
                    role="tool",
                    content=_serialize_tool_result(payload),
                    tool_call_id=str(payload.get("tool_use_id") or "") or None,
                )
            )

    flush_assistant()
    return messages
