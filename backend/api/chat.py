"""
API routes for chat turns.
Thin route layer - runtime logic lives in services/chat_runtime.py
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from chat.engine import TurnResult
from chat.errors import (
    PersistenceError,
    RateLimitExceededError,
    SequenceAllocationError,
)
from meta import new_id
from services.chat_runtime import get_chat_runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    conversation_id: str | None = None


def _encode_sse_frame(
    payload: dict[str, Any],
    *,
    event: str = "event",
    event_id: int | None = None,
) -> str:
    lines: list[str] = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    lines.append(
        "data: "
        + json.dumps(payload, ensure_ascii=True, default=str, separators=(",", ":"))
    )
    return "\n".join(lines) + "\n\n"


def turn_error_to_http(exc: Exception) -> HTTPException:
    if isinstance(exc, RateLimitExceededError):
        return HTTPException(
            status_code=429,
            detail={"error": str(exc), "error_code": "persistence_rate_limited"},
        )
    if isinstance(exc, (PersistenceError, SequenceAllocationError)):
        return HTTPException(
            status_code=503,
            detail={"error": str(exc), "error_code": "persistence_unavailable"},
        )
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _resolve_conversation_id(body: ChatRequest) -> str:
    conversation_id = (body.conversation_id or "").strip()
    return conversation_id or new_id("conv")


@router.post("/chat")
async def chat(body: ChatRequest):
    runtime = get_chat_runtime()
    conversation_id = _resolve_conversation_id(body)
    try:
        result = await runtime.run_turn(conversation_id, body.message)
    except (RateLimitExceededError, PersistenceError, SequenceAllocationError, ValueError) as exc:
        raise turn_error_to_http(exc) from exc
    return {
        **result.to_dict(),
        "events": [event.to_dict() for event in result.events],
    }


@router.post("/chat/stream")
async def chat_stream(body: ChatRequest):
    runtime = get_chat_runtime()
    conversation_id = _resolve_conversation_id(body)

    async def event_stream() -> AsyncIterator[str]:
        queue: asyncio.Queue[str | None] = asyncio.Queue()
        frame_seq = 0

        def frame(payload: dict[str, Any], event: str) -> str:
            nonlocal frame_seq
            frame_seq += 1
            return _encode_sse_frame(
                {"seq": frame_seq, "conversation_id": conversation_id, **payload},
                event=event,
                event_id=frame_seq,
            )

        async def on_notification(notification: dict[str, Any]) -> None:
            await queue.put(frame({"notification": notification}, "notification"))

        async def run_turn() -> None:
            try:
                result: TurnResult = await runtime.run_turn(
                    conversation_id,
                    body.message,
                    on_notification=on_notification,
                )
                await queue.put(frame({"done": True, **result.to_dict()}, "done"))
            except Exception as exc:
                logger.exception("Streamed turn failed for conversation %s", conversation_id)
                http_exc = turn_error_to_http(exc)
                await queue.put(
                    frame(
                        {"error": str(exc), "status_code": http_exc.status_code},
                        "error",
                    )
                )
            finally:
                await queue.put(None)

        task = asyncio.create_task(run_turn())
        try:
            while True:
                next_frame = await queue.get()
                if next_frame is None:
                    break
                yield next_frame
        finally:
            if not task.done():
                # A client disconnect does not stop the turn; terminal events still get persisted.
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            "X-Conversation-Id": conversation_id,
        },
    )


@router.post("/conversations/{conversation_id}/stop")
async def stop_conversation_turn(conversation_id: str):
    runtime = get_chat_runtime()
    stopped = runtime.stop_turn(conversation_id)
    return {"conversation_id": conversation_id, "stopped": stopped}
