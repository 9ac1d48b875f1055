from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from chat.approvals import APPROVAL_STATUS_APPROVED, ApprovalGate, ApprovalRequest
from chat.errors import ApprovalError
from chat.events import ToolResult
from chat.llm_client import ToolCall
from chat.tooling import (
    APPROVAL_DENIED_MESSAGE,
    DEFAULT_WRITE_TOOL_PREFIXES,
    ToolExecutor,
    normalize_tool_arguments,
    partition_tool_calls,
    serialize_tool_result,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolOutcome:
    tool_call: ToolCall
    success: bool
    result: Any = None
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "tool_use_id": self.tool_call.id,
            "tool_name": self.tool_call.name,
            "tool_result": self.result if self.success else None,
            "success": self.success,
            "is_error": not self.success,
            "error_message": None if self.success else self.error,
        }

    def to_turn_event(self) -> ToolResult:
        return ToolResult(
            tool_use_id=self.tool_call.id,
            tool_name=self.tool_call.name,
            success=self.success,
            result=self.result if self.success else None,
            error=None if self.success else self.error,
        )


@dataclass(frozen=True)
class ApprovalVerdict:
    tool_use_id: str
    approved: bool
    approval_id: str | None = None
    status: str | None = None
    reason: str | None = None

    @property
    def denial_message(self) -> str:
        if self.approval_id is None:
            return f"Approval failed: {self.reason or 'unknown error'}"
        return APPROVAL_DENIED_MESSAGE


class ToolDispatcher:
    """Approval checks and concurrent execution for one batch of tool calls."""

    def __init__(
        self,
        *,
        executor: ToolExecutor,
        approval_gate: ApprovalGate,
        write_prefixes: Iterable[str] = DEFAULT_WRITE_TOOL_PREFIXES,
        approval_ttl_seconds: float | None = None,
    ) -> None:
        self._executor = executor
        self._approval_gate = approval_gate
        self._write_prefixes = tuple(write_prefixes)
        self._approval_ttl_seconds = approval_ttl_seconds

    def approval_queue(self, tool_calls: list[ToolCall]) -> list[ToolCall]:
        """Write calls from a batch, in the order they must be put to a human."""
        writes, _ = partition_tool_calls(tool_calls, self._write_prefixes)
        return writes

    async def seek_approval(
        self,
        conversation_id: str,
        tool_call: ToolCall,
        on_opened: Callable[[ApprovalRequest], Awaitable[None]] | None = None,
    ) -> ApprovalVerdict:
        """Ask a human about one write tool; any fault along the way counts as a denial."""
        try:
            handle = await self._approval_gate.open(
                conversation_id,
                tool_call.name,
                tool_call.arguments,
                ttl=self._approval_ttl_seconds,
            )
        except (ApprovalError, sqlite3.Error) as exc:
            logger.error(
                "Could not open approval for %s (%s): %s", tool_call.name, tool_call.id, exc
            )
            return ApprovalVerdict(tool_use_id=tool_call.id, approved=False, reason=str(exc))

        request = handle.request
        if on_opened is not None:
            await on_opened(request)

        try:
            approved = await self._approval_gate.wait(handle)
        except ApprovalError as exc:
            logger.error("Approval %s could not be settled: %s", request.id, exc)
            approved = False

        settled = self._approval_gate.get(request.id)
        status = settled.status if settled is not None else None
        reason = settled.rejection_reason if settled is not None else None
        if not approved and status == APPROVAL_STATUS_APPROVED:
            status = None
        return ApprovalVerdict(
            tool_use_id=tool_call.id,
            approved=approved,
            approval_id=request.id,
            status=status,
            reason=reason,
        )

    async def abandon_approval(self, approval_id: str) -> None:
        """Reject a request whose turn stopped before a human answered."""
        if self._approval_gate.has_pending(approval_id):
            await self._approval_gate.respond(approval_id, False, reason="turn_cancelled")

    async def execute(self, tool_call: ToolCall) -> ToolOutcome:
        arguments = normalize_tool_arguments(tool_call.arguments)
        try:
            result = await self._executor(tool_call.name, arguments)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Tool %s (%s) raised: %s", tool_call.name, tool_call.id, exc)
            return ToolOutcome(tool_call=tool_call, success=False, error=str(exc) or type(exc).__name__)
        return ToolOutcome(tool_call=tool_call, success=True, result=serialize_tool_result(result))

    async def run_batch(
        self,
        tool_calls: list[ToolCall],
        *,
        denials: dict[str, str],
        on_outcome: Callable[[int, ToolOutcome], Awaitable[None]],
    ) -> list[ToolOutcome]:
        """Run every call concurrently; ``on_outcome`` fires in completion order.

        ``denials`` maps tool ids to the error text for calls that must not
        run. All calls settle before the first ``on_outcome`` failure, if any,
        is re-raised.
        """

        async def _run_one(index: int, tool_call: ToolCall) -> ToolOutcome:
            denial = denials.get(tool_call.id)
            if denial is not None:
                outcome = ToolOutcome(tool_call=tool_call, success=False, error=denial)
            else:
                outcome = await self.execute(tool_call)
            await on_outcome(index, outcome)
            return outcome

        settled = await asyncio.gather(
            *(_run_one(index, call) for index, call in enumerate(tool_calls)),
            return_exceptions=True,
        )
        outcomes: list[ToolOutcome] = []
        for item in settled:
            if isinstance(item, BaseException):
                raise item
            outcomes.append(item)
        return outcomes
