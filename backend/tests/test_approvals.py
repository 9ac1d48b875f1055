import asyncio
import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

import meta
from chat.approvals import ApprovalGate, calculate_priority, describe_change


class _RecordingNotifier:
    def __init__(self) -> None:
        self.requests = []

    async def notify(self, request) -> None:
        self.requests.append(request)


class _BrokenNotifier:
    async def notify(self, request) -> None:
        raise ConnectionError("webhook unreachable")


class ApprovalGateTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        temp_root = Path(self.temp_dir.name)

        meta.DB_DIR = temp_root / "data"
        meta.DB_PATH = meta.DB_DIR / "meta.db"
        meta.init_meta_db()

        self.notifier = _RecordingNotifier()
        self.gate = ApprovalGate(notifier=self.notifier, default_ttl_seconds=30)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    async def test_approved_request_resolves_true(self) -> None:
        handle = await self.gate.open("conv_a", "update_invoice", {"id": 4, "total": 10})

        self.assertEqual(len(self.notifier.requests), 1)
        self.assertEqual(handle.request.priority, "medium")
        self.assertEqual(
            [r.id for r in self.gate.get_pending("conv_a")], [handle.request.id]
        )

        responded = await self.gate.respond(
            handle.request.id, "approved", decided_by="reviewer@example.com"
        )

        self.assertTrue(responded)
        self.assertTrue(await self.gate.wait(handle))
        stored = self.gate.get(handle.request.id)
        self.assertEqual(stored.status, "approved")
        self.assertEqual(stored.decided_by, "reviewer@example.com")
        self.assertEqual(stored.args, {"id": 4, "total": 10})
        self.assertEqual(self.gate.get_pending("conv_a"), [])

    async def test_rejection_records_reason(self) -> None:
        handle = await self.gate.open("conv_a", "delete_account", {"id": 1})
        await self.gate.respond(handle.request.id, False, reason="wrong account")

        self.assertFalse(await self.gate.wait(handle))
        stored = self.gate.get(handle.request.id)
        self.assertEqual(stored.status, "rejected")
        self.assertEqual(stored.rejection_reason, "wrong account")
        self.assertEqual(stored.priority, "high")

    async def test_request_expires_after_ttl(self) -> None:
        approved = await self.gate.request("conv_a", "create_ticket", {}, ttl=0.05)

        self.assertFalse(approved)
        pending = self.gate.get_pending("conv_a")
        self.assertEqual(pending, [])

    async def test_late_response_after_expiry_is_ignored(self) -> None:
        handle = await self.gate.open("conv_a", "create_ticket", {}, ttl=0.01)
        self.assertFalse(await self.gate.wait(handle))

        with self.assertLogs("chat.approvals", level="WARNING"):
            responded = await self.gate.respond(handle.request.id, "approved")

        self.assertFalse(responded)
        self.assertEqual(self.gate.get(handle.request.id).status, "expired")

    async def test_notifier_failure_counts_as_rejection(self) -> None:
        gate = ApprovalGate(notifier=_BrokenNotifier(), default_ttl_seconds=30)

        with self.assertLogs("chat.approvals", level="ERROR"):
            handle = await gate.open("conv_a", "post_message", {"text": "hi"})

        self.assertFalse(await gate.wait(handle))
        stored = gate.get(handle.request.id)
        self.assertEqual(stored.status, "rejected")
        self.assertTrue(stored.rejection_reason.startswith("notification_failed"))

    async def test_cancelled_waiter_rejects_request(self) -> None:
        handle = await self.gate.open("conv_a", "update_invoice", {})
        waiter = asyncio.create_task(self.gate.wait(handle))
        await asyncio.sleep(0)
        waiter.cancel()

        with self.assertRaises(asyncio.CancelledError):
            await waiter

        stored = self.gate.get(handle.request.id)
        self.assertEqual(stored.status, "rejected")
        self.assertEqual(stored.rejection_reason, "turn_cancelled")

    async def test_invalid_decision_is_rejected(self) -> None:
        handle = await self.gate.open("conv_a", "update_invoice", {})
        with self.assertRaises(ValueError):
            await self.gate.respond(handle.request.id, "maybe")
        self.assertTrue(self.gate.has_pending(handle.request.id))
        self.gate.shutdown()

    async def test_unknown_priority_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            await self.gate.open("conv_a", "update_invoice", {}, priority="urgent")

    async def test_shutdown_expires_open_requests(self) -> None:
        handle = await self.gate.open("conv_a", "update_invoice", {})
        self.gate.shutdown()

        self.assertFalse(await self.gate.wait(handle))
        self.assertEqual(self.gate.get(handle.request.id).status, "expired")

    async def test_expire_stale_handles_rows_without_live_waiters(self) -> None:
        past = datetime.now(timezone.utc) - timedelta(minutes=10)
        with meta.get_conn() as conn:
            conn.execute(
                """
                INSERT INTO approvals
                (id, conversation_id, tool_name, tool_args, status, priority, created_at, expires_at)
                VALUES ('approval_orphan', 'conv_a', 'delete_row', ?, 'pending', 'high', ?, ?)
                """,
                (
                    json.dumps({}),
                    past.isoformat(),
                    (past + timedelta(minutes=5)).isoformat(),
                ),
            )
            conn.commit()
        live = await self.gate.open("conv_a", "update_invoice", {})

        self.assertEqual(self.gate.expire_stale(), 1)
        self.assertEqual(self.gate.get("approval_orphan").status, "expired")
        self.assertEqual(self.gate.get(live.request.id).status, "pending")
        self.gate.shutdown()


class ApprovalHelperTests(unittest.TestCase):
    def test_priority_follows_tool_verb(self) -> None:
        self.assertEqual(calculate_priority("delete_user"), "high")
        self.assertEqual(calculate_priority("batch_import"), "high")
        self.assertEqual(calculate_priority("create_ticket"), "medium")
        self.assertEqual(calculate_priority("post_message"), "low")

    def test_describe_change_names_action_and_arguments(self) -> None:
        self.assertEqual(
            describe_change("update_invoice", {"total": 3, "id": 1}),
            "Update invoice (id, total)",
        )
        self.assertEqual(describe_change("delete_", {}), "Delete record (no arguments)")


if __name__ == "__main__":
    unittest.main()
