from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from chat.errors import ApprovalError
from meta import decode_json_column, get_conn, new_id

logger = logging.getLogger(__name__)

APPROVAL_STATUS_PENDING = "pending"
APPROVAL_STATUS_APPROVED = "approved"
APPROVAL_STATUS_REJECTED = "rejected"
APPROVAL_STATUS_EXPIRED = "expired"

APPROVAL_PRIORITIES = ("low", "medium", "high")

DEFAULT_APPROVAL_TTL_SECONDS = 5 * 60


@dataclass(frozen=True)
class ApprovalRequest:
    id: str
    conversation_id: str
    tool_name: str
    args: dict[str, Any]
    status: str
    priority: str
    created_at: str
    expires_at: str
    description: str | None = None
    decided_at: str | None = None
    decided_by: str | None = None
    rejection_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "tool_name": self.tool_name,
            "args": self.args,
            "status": self.status,
            "priority": self.priority,
            "description": self.description,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "decided_at": self.decided_at,
            "decided_by": self.decided_by,
            "rejection_reason": self.rejection_reason,
        }


class ApprovalNotifier(Protocol):
    async def notify(self, request: ApprovalRequest) -> None: ...


class LoggingApprovalNotifier:
    """Default notifier: the live transport learns about approvals from turn notifications."""

    async def notify(self, request: ApprovalRequest) -> None:
        logger.info(
            "Approval requested: id=%s conversation=%s tool=%s priority=%s",
            request.id,
            request.conversation_id,
            request.tool_name,
            request.priority,
        )


@dataclass
class _PendingApproval:
    future: asyncio.Future[bool]
    timer: asyncio.TimerHandle | None = None


@dataclass(frozen=True)
class ApprovalHandle:
    request: ApprovalRequest
    future: asyncio.Future[bool] = field(repr=False)


def calculate_priority(tool_name: str) -> str:
    lowered = tool_name.lower()
    if "delete" in lowered or "batch" in lowered:
        return "high"
    if "create" in lowered or "update" in lowered:
        return "medium"
    return "low"


def describe_change(tool_name: str, args: dict[str, Any]) -> str:
    lowered = tool_name.lower()
    for verb, label in (
        ("delete", "Delete"),
        ("create", "Create"),
        ("update", "Update"),
        ("patch", "Update"),
        ("put", "Replace"),
        ("post", "Submit"),
    ):
        if verb in lowered:
            target = lowered.replace(verb, "").strip("_- ") or "record"
            break
    else:
        label, target = "Run", lowered

    keys = ", ".join(sorted(args)) if args else "no arguments"
    return f"{label} {target.replace('_', ' ')} ({keys})"


def _approval_row_to_request(row: sqlite3.Row) -> ApprovalRequest:
    return ApprovalRequest(
        id=row["id"],
        conversation_id=row["conversation_id"],
        tool_name=row["tool_name"],
        args=decode_json_column(row["tool_args"], {}),
        status=row["status"],
        priority=row["priority"],
        description=row["action_description"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        decided_at=row["decided_at"],
        decided_by=row["decided_by"],
        rejection_reason=row["rejection_reason"],
    )


class ApprovalGate:
    """Suspends write-tool calls until a human decides or the deadline passes.

    Each open request owns one entry in ``_pending``. Whoever removes that
    entry first (the expiry timer, ``respond``, a notifier failure, or
    shutdown) is the only party allowed to resolve the future and write the
    terminal status; everyone after it finds nothing and backs off.
    """

    def __init__(
        self,
        *,
        notifier: ApprovalNotifier | None = None,
        default_ttl_seconds: float = DEFAULT_APPROVAL_TTL_SECONDS,
    ) -> None:
        self._notifier = notifier or LoggingApprovalNotifier()
        self.default_ttl_seconds = default_ttl_seconds
        self._pending: dict[str, _PendingApproval] = {}

    def has_pending(self, approval_id: str) -> bool:
        return approval_id in self._pending

    async def request(
        self,
        conversation_id: str,
        tool_name: str,
        args: dict[str, Any],
        priority: str | None = None,
        ttl: float | None = None,
    ) -> bool:
        handle = await self.open(conversation_id, tool_name, args, priority, ttl)
        return await self.wait(handle)

    async def open(
        self,
        conversation_id: str,
        tool_name: str,
        args: dict[str, Any],
        priority: str | None = None,
        ttl: float | None = None,
    ) -> ApprovalHandle:
        resolved_priority = priority or calculate_priority(tool_name)
        if resolved_priority not in APPROVAL_PRIORITIES:
            raise ValueError(f"unknown approval priority '{resolved_priority}'")
        ttl_seconds = self.default_ttl_seconds if ttl is None else max(0.0, float(ttl))

        now = datetime.now(timezone.utc)
        request = ApprovalRequest(
            id=new_id("approval"),
            conversation_id=conversation_id,
            tool_name=tool_name,
            args=dict(args),
            status=APPROVAL_STATUS_PENDING,
            priority=resolved_priority,
            description=describe_change(tool_name, args),
            created_at=now.isoformat(),
            expires_at=(now + timedelta(seconds=ttl_seconds)).isoformat(),
        )

        with get_conn() as conn:
            conn.execute(
                """
                INSERT INTO approvals
                (id, conversation_id, tool_name, tool_args, action_description,
                 status, priority, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request.id,
                    conversation_id,
                    tool_name,
                    json.dumps(request.args, ensure_ascii=True, default=str),
                    request.description,
                    APPROVAL_STATUS_PENDING,
                    resolved_priority,
                    request.created_at,
                    request.expires_at,
                ),
            )
            conn.commit()

        loop = asyncio.get_running_loop()
        future: asyncio.Future[bool] = loop.create_future()
        pending = _PendingApproval(future=future)
        self._pending[request.id] = pending
        pending.timer = loop.call_later(ttl_seconds, self._expire, request.id)

        try:
            await self._notifier.notify(request)
        except Exception as exc:
            logger.error(
                "Approval notification failed for %s, treating as rejection: %s",
                request.id,
                exc,
            )
            self._settle(
                request.id,
                APPROVAL_STATUS_REJECTED,
                reason=f"notification_failed: {exc}",
            )
        else:
            logger.info(
                "Approval %s opened for %s (conversation=%s, priority=%s, ttl=%.1fs)",
                request.id,
                tool_name,
                conversation_id,
                resolved_priority,
                ttl_seconds,
            )

        return ApprovalHandle(request=request, future=future)

    async def wait(self, handle: ApprovalHandle) -> bool:
        try:
            return await asyncio.shield(handle.future)
        except asyncio.CancelledError:
            self._settle(
                handle.request.id,
                APPROVAL_STATUS_REJECTED,
                reason="turn_cancelled",
            )
            raise

    async def respond(
        self,
        approval_id: str,
        decision: str | bool,
        decided_by: str | None = None,
        reason: str | None = None,
    ) -> bool:
        """Apply a human decision. Unknown or already-settled ids are a logged no-op."""
        if isinstance(decision, bool):
            status = APPROVAL_STATUS_APPROVED if decision else APPROVAL_STATUS_REJECTED
        elif decision in {APPROVAL_STATUS_APPROVED, APPROVAL_STATUS_REJECTED}:
            status = decision
        else:
            raise ValueError(f"invalid approval decision '{decision}'")

        if approval_id not in self._pending:
            logger.warning(
                "No pending approval found for %s - may have been processed already",
                approval_id,
            )
            return False

        self._settle(approval_id, status, decided_by=decided_by, reason=reason)
        return True

    def get(self, approval_id: str) -> ApprovalRequest | None:
        with get_conn() as conn:
            row = conn.execute("SELECT * FROM approvals WHERE id = ?", (approval_id,)).fetchone()
        return None if row is None else _approval_row_to_request(row)

    def get_pending(self, conversation_id: str) -> list[ApprovalRequest]:
        with get_conn() as conn:
            rows = conn.execute(
                """
                SELECT * FROM approvals
                WHERE conversation_id = ? AND status = ?
                ORDER BY created_at ASC
                """,
                (conversation_id, APPROVAL_STATUS_PENDING),
            ).fetchall()
        return [_approval_row_to_request(row) for row in rows]

    def expire_stale(self) -> int:
        """Expire pending rows past their deadline that no live handle owns (e.g. after a restart)."""
        now = datetime.now(timezone.utc).isoformat()
        with get_conn() as conn:
            rows = conn.execute(
                "SELECT id FROM approvals WHERE status = ? AND expires_at < ?",
                (APPROVAL_STATUS_PENDING, now),
            ).fetchall()
            orphaned = [row["id"] for row in rows if row["id"] not in self._pending]
            for approval_id in orphaned:
                conn.execute(
                    "UPDATE approvals SET status = ?, decided_at = ? WHERE id = ? AND status = ?",
                    (APPROVAL_STATUS_EXPIRED, now, approval_id, APPROVAL_STATUS_PENDING),
                )
            conn.commit()
        if orphaned:
            logger.info("Expired %d stale approvals", len(orphaned))
        return len(orphaned)

    def shutdown(self) -> None:
        for approval_id in list(self._pending):
            self._settle(approval_id, APPROVAL_STATUS_EXPIRED, reason="shutdown")

    # ---- resolution ------------------------------------------------------------

    def _expire(self, approval_id: str) -> None:
        try:
            if self._settle(approval_id, APPROVAL_STATUS_EXPIRED):
                logger.info("Approval %s timed out - auto-expiring", approval_id)
        except ApprovalError:
            # Runs as a loop callback; the waiter has already been resolved to False.
            logger.exception("Approval %s expiry could not be recorded", approval_id)

    def _settle(
        self,
        approval_id: str,
        status: str,
        *,
        decided_by: str | None = None,
        reason: str | None = None,
    ) -> bool:
        pending = self._pending.pop(approval_id, None)
        if pending is None:
            return False
        if pending.timer is not None:
            pending.timer.cancel()

        approved = status == APPROVAL_STATUS_APPROVED
        try:
            with get_conn() as conn:
                conn.execute(
                    """
                    UPDATE approvals
                    SET status = ?, decided_at = ?, decided_by = ?, rejection_reason = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        status,
                        datetime.now(timezone.utc).isoformat(),
                        decided_by,
                        reason,
                        approval_id,
                        APPROVAL_STATUS_PENDING,
                    ),
                )
                conn.commit()
        except sqlite3.Error as exc:
            logger.error("Failed to record approval %s as %s: %s", approval_id, status, exc)
            if not pending.future.done():
                pending.future.set_result(False)
            raise ApprovalError(f"could not record decision for {approval_id}") from exc

        if not pending.future.done():
            pending.future.set_result(approved)
        logger.info("Approval %s %s", approval_id, status)
        return True
