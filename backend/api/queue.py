from fastapi import APIRouter, HTTPException

from chat.errors import QueueUnavailableError
from services.chat_runtime import get_chat_runtime

router = APIRouter(prefix="/api", tags=["queue"])


@router.get("/queue/status")
async def get_queue_status(conversation_id: str | None = None):
    return await get_chat_runtime().queue_status(conversation_id)


@router.post("/queue/jobs/{job_id}/retry")
async def retry_failed_job(job_id: str):
    try:
        requeued = await get_chat_runtime().queue.retry_failed(job_id)
    except QueueUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if not requeued:
        raise HTTPException(status_code=404, detail="failed job not found")
    return {"job_id": job_id, "requeued": True}
