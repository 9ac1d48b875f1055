from typing import Literal

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from services.chat_runtime import get_chat_runtime

router = APIRouter(prefix="/api", tags=["approvals"])


class ApprovalResponseRequest(BaseModel):
    decision: Literal["approved", "rejected"]
    decided_by: str | None = None
    reason: str | None = None


@router.get("/approvals/{approval_id}")
async def get_approval(approval_id: str):
    request = get_chat_runtime().approval_gate.get(approval_id)
    if request is None:
        raise HTTPException(status_code=404, detail="approval not found")
    return request.to_dict()


@router.post("/approvals/{approval_id}/respond")
async def respond_to_approval(approval_id: str, body: ApprovalResponseRequest):
    gate = get_chat_runtime().approval_gate
    existing = gate.get(approval_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="approval not found")

    accepted = await gate.respond(
        approval_id,
        body.decision,
        decided_by=body.decided_by,
        reason=body.reason,
    )
    if not accepted:
        current = gate.get(approval_id)
        raise HTTPException(
            status_code=409,
            detail={
                "error": "approval already resolved",
                "status": current.status if current is not None else existing.status,
            },
        )
    return gate.get(approval_id).to_dict()
