from fastapi import APIRouter, HTTPException, Query

from chat.jobs import ConversationBusyError
from chat.materializer import list_messages
from services.chat_runtime import get_chat_runtime

router = APIRouter(prefix="/api", tags=["conversations"])


def _require_conversation(conversation_id: str) -> None:
    if get_chat_runtime().event_log.count_events(conversation_id) == 0:
        raise HTTPException(status_code=404, detail="conversation not found")


@router.get("/conversations/{conversation_id}/events")
async def get_conversation_events(
    conversation_id: str,
    from_seq: int | None = Query(default=None, ge=0),
    to_seq: int | None = Query(default=None, ge=0),
):
    if from_seq is not None and to_seq is not None and from_seq > to_seq:
        raise HTTPException(status_code=400, detail="from_seq must not exceed to_seq")
    _require_conversation(conversation_id)

    events = get_chat_runtime().event_log.get_events(conversation_id, from_seq, to_seq)
    return {
        "conversation_id": conversation_id,
        "events": [event.to_dict() for event in events],
    }


@router.get("/conversations/{conversation_id}/messages")
async def get_conversation_messages(conversation_id: str):
    _require_conversation(conversation_id)
    return {
        "conversation_id": conversation_id,
        "messages": [message.to_dict() for message in list_messages(conversation_id)],
    }


@router.post("/conversations/{conversation_id}/rebuild")
async def rebuild_conversation(conversation_id: str):
    _require_conversation(conversation_id)
    try:
        count = await get_chat_runtime().rebuild_read_model(conversation_id)
    except ConversationBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"conversation_id": conversation_id, "messages": count}


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str):
    _require_conversation(conversation_id)
    try:
        counts = await get_chat_runtime().delete_conversation(conversation_id)
    except ConversationBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"conversation_id": conversation_id, "deleted": counts}


@router.get("/conversations/{conversation_id}/approvals")
async def get_pending_approvals(conversation_id: str):
    pending = get_chat_runtime().approval_gate.get_pending(conversation_id)
    return {
        "conversation_id": conversation_id,
        "approvals": [request.to_dict() for request in pending],
    }
