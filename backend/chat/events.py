"""Event vocabulary shared by the normalizer, the event log and the read model.

Two families live here:

* Stored event types (``EVENT_*``) - the closed set of domain events the
  event log accepts. Payloads are plain dicts only at the storage boundary.
* Turn events (``ReasoningChunk`` ... ``TurnCancelled``) - typed values the
  stream normalizer and orchestrator produce in memory. Each one knows how
  to render itself as a live notification for the transport layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Union

EVENT_USER_MESSAGE = "user_message_sent"
EVENT_REASONING_STARTED = "agent_thinking_started"
EVENT_REASONING_COMPLETED = "agent_thinking_completed"
EVENT_MESSAGE_SENT = "agent_message_sent"
EVENT_TOOL_REQUESTED = "tool_use_requested"
EVENT_TOOL_COMPLETED = "tool_use_completed"
EVENT_APPROVAL_REQUESTED = "approval_requested"
EVENT_APPROVAL_COMPLETED = "approval_completed"
EVENT_SESSION_STARTED = "session_started"
EVENT_SESSION_ENDED = "session_ended"
EVENT_ERROR = "error_occurred"
EVENT_TURN_CANCELLED = "turn_cancelled"

EVENT_TYPES = frozenset(
    {
        EVENT_USER_MESSAGE,
        EVENT_REASONING_STARTED,
        EVENT_REASONING_COMPLETED,
        EVENT_MESSAGE_SENT,
        EVENT_TOOL_REQUESTED,
        EVENT_TOOL_COMPLETED,
        EVENT_APPROVAL_REQUESTED,
        EVENT_APPROVAL_COMPLETED,
        EVENT_SESSION_STARTED,
        EVENT_SESSION_ENDED,
        EVENT_ERROR,
        EVENT_TURN_CANCELLED,
    }
)

STOP_REASON_END_TURN = "end_turn"
STOP_REASON_TOOL_USE = "tool_use"
STOP_REASON_MAX_TOKENS = "max_tokens"
STOP_REASON_MAX_TURNS = "max_turns"
STOP_REASON_CANCELLED = "cancelled"

STOP_REASONS = frozenset(
    {
        STOP_REASON_END_TURN,
        STOP_REASON_TOOL_USE,
        STOP_REASON_MAX_TOKENS,
        "stop_sequence",
        "pause_turn",
        "refusal",
    }
)


@dataclass(frozen=True)
class StoredEvent:
    id: str
    conversation_id: str
    type: str
    sequence_number: int
    timestamp: str
    payload: dict[str, Any]
    processed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "type": self.type,
            "sequence_number": self.sequence_number,
            "timestamp": self.timestamp,
            "payload": self.payload,
            "processed": self.processed,
        }


@dataclass(frozen=True)
class MaterializedMessage:
    id: str
    conversation_id: str
    role: str
    message_type: str
    content: str
    metadata: dict[str, Any]
    sequence_number: int
    event_id: str
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "message_type": self.message_type,
            "content": self.content,
            "metadata": self.metadata,
            "sequence_number": self.sequence_number,
            "event_id": self.event_id,
            "created_at": self.created_at,
        }


# ---- turn events -------------------------------------------------------------


@dataclass(frozen=True)
class ReasoningChunk:
    kind: ClassVar[str] = "reasoning_chunk"
    content: str
    block_index: int = 0

    def to_notification(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "content": self.content,
            "blockIndex": self.block_index,
        }


@dataclass(frozen=True)
class ReasoningFinalized:
    kind: ClassVar[str] = "reasoning_finalized"
    content: str
    block_index: int = 0

    def to_notification(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "content": self.content,
            "blockIndex": self.block_index,
        }


@dataclass(frozen=True)
class MessageChunk:
    kind: ClassVar[str] = "message_chunk"
    content: str
    block_index: int = 0

    def to_notification(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "content": self.content,
            "blockIndex": self.block_index,
        }


@dataclass(frozen=True)
class ToolExecution:
    kind: ClassVar[str] = "tool_execution"
    tool_use_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)
    block_index: int = 0

    def to_notification(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "toolUseId": self.tool_use_id,
            "toolName": self.tool_name,
            "input": self.input,
        }


@dataclass(frozen=True)
class ToolResult:
    kind: ClassVar[str] = "tool_result"
    tool_use_id: str
    tool_name: str
    success: bool
    result: Any = None
    error: str | None = None

    def to_notification(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.kind,
            "toolUseId": self.tool_use_id,
            "toolName": self.tool_name,
            "success": self.success,
        }
        if self.success:
            payload["result"] = self.result
        else:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class FinalResponse:
    kind: ClassVar[str] = "final_response"
    content: str
    stop_reason: str = STOP_REASON_END_TURN

    def to_notification(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "content": self.content,
            "stopReason": self.stop_reason,
        }


@dataclass(frozen=True)
class UsageReport:
    kind: ClassVar[str] = "usage"
    input_tokens: int
    output_tokens: int

    def to_notification(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
        }


@dataclass(frozen=True)
class TurnCancelled:
    kind: ClassVar[str] = "turn_cancelled"
    content: str
    reasoning: str

    def to_notification(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "content": self.content,
            "reasoning": self.reasoning,
        }


@dataclass(frozen=True)
class TurnError:
    kind: ClassVar[str] = "error"
    message: str
    code: str = "provider_error"

    def to_notification(self) -> dict[str, Any]:
        return {"type": self.kind, "message": self.message, "code": self.code}


@dataclass(frozen=True)
class ApprovalRequested:
    kind: ClassVar[str] = "approval_requested"
    approval_id: str
    tool_use_id: str
    tool_name: str
    args: dict[str, Any]
    change_summary: str
    priority: str
    expires_at: str

    def to_notification(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "approvalId": self.approval_id,
            "toolUseId": self.tool_use_id,
            "toolName": self.tool_name,
            "args": self.args,
            "changeSummary": self.change_summary,
            "priority": self.priority,
            "expiresAt": self.expires_at,
        }


@dataclass(frozen=True)
class ApprovalResolved:
    kind: ClassVar[str] = "approval_resolved"
    approval_id: str
    tool_use_id: str
    decision: str
    reason: str | None = None

    def to_notification(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "approvalId": self.approval_id,
            "toolUseId": self.tool_use_id,
            "decision": self.decision,
            "reason": self.reason,
        }


TurnEvent = Union[
    ReasoningChunk,
    ReasoningFinalized,
    MessageChunk,
    ToolExecution,
    ToolResult,
    FinalResponse,
    UsageReport,
    TurnCancelled,
    TurnError,
    ApprovalRequested,
    ApprovalResolved,
]


def notification_for(
    turn_event: TurnEvent,
    stored: StoredEvent | None = None,
) -> dict[str, Any]:
    """Render a turn event for the transport, tagging persisted ones with their slot."""
    payload = turn_event.to_notification()
    if stored is not None:
        payload["eventId"] = stored.id
        payload["sequenceNumber"] = stored.sequence_number
    return payload
