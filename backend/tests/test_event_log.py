import asyncio
import tempfile
import unittest
from pathlib import Path

import meta
from chat.event_store import EventLog
from chat.events import (
    EVENT_MESSAGE_SENT,
    EVENT_SESSION_STARTED,
    EVENT_TOOL_COMPLETED,
    EVENT_USER_MESSAGE,
)
from chat.runtime.counters import InMemoryCounterBackend
from chat.sequence import SequenceAllocator


class EventLogTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        temp_root = Path(self.temp_dir.name)

        meta.DB_DIR = temp_root / "data"
        meta.DB_PATH = meta.DB_DIR / "meta.db"
        meta.init_meta_db()

        self.allocator = SequenceAllocator(InMemoryCounterBackend())
        self.log = EventLog(self.allocator)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _run(self, coro):
        return asyncio.run(coro)

    def test_append_assigns_next_sequence_and_persists_payload(self) -> None:
        first = self._run(self.log.append("conv_a", EVENT_SESSION_STARTED, {}))
        second = self._run(
            self.log.append("conv_a", EVENT_USER_MESSAGE, {"content": "hello"})
        )

        self.assertEqual(first.sequence_number, 0)
        self.assertEqual(second.sequence_number, 1)
        self.assertTrue(second.id.startswith("event_"))

        stored = self.log.get_event(second.id)
        self.assertIsNotNone(stored)
        self.assertEqual(stored.payload, {"content": "hello"})
        self.assertFalse(stored.processed)

    def test_reads_are_ordered_by_sequence_not_insertion(self) -> None:
        # Completions land in whatever order the tools finish.
        self._run(
            self.log.append_with_sequence(
                "conv_a", EVENT_TOOL_COMPLETED, {"tool_use_id": "t3"}, 4
            )
        )
        self._run(
            self.log.append_with_sequence(
                "conv_a", EVENT_TOOL_COMPLETED, {"tool_use_id": "t1"}, 2
            )
        )
        self._run(
            self.log.append_with_sequence(
                "conv_a", EVENT_TOOL_COMPLETED, {"tool_use_id": "t2"}, 3
            )
        )

        events = self.log.get_events("conv_a")
        self.assertEqual([e.sequence_number for e in events], [2, 3, 4])
        self.assertEqual(
            [e.payload["tool_use_id"] for e in events], ["t1", "t2", "t3"]
        )

    def test_duplicate_sequence_numbers_fall_back_to_insertion_order(self) -> None:
        self._run(
            self.log.append_with_sequence("conv_a", EVENT_USER_MESSAGE, {"n": 1}, 0)
        )
        self._run(
            self.log.append_with_sequence("conv_a", EVENT_USER_MESSAGE, {"n": 2}, 0)
        )

        events = self.log.get_events("conv_a")
        self.assertEqual([e.payload["n"] for e in events], [1, 2])

    def test_get_events_respects_inclusive_range(self) -> None:
        for index in range(6):
            self._run(self.log.append("conv_a", EVENT_USER_MESSAGE, {"n": index}))

        window = self.log.get_events("conv_a", from_seq=2, to_seq=4)
        self.assertEqual([e.sequence_number for e in window], [2, 3, 4])
        self.assertEqual(len(self.log.get_events("conv_a", from_seq=5)), 1)
        self.assertEqual(len(self.log.get_events("conv_a", to_seq=0)), 1)
        self.assertEqual(self.log.get_events("conv_missing"), [])

    def test_rejects_unknown_type_and_negative_sequence(self) -> None:
        with self.assertRaises(ValueError):
            self._run(self.log.append("conv_a", "made_up_event", {}))
        with self.assertRaises(ValueError):
            self._run(
                self.log.append_with_sequence("conv_a", EVENT_USER_MESSAGE, {}, -1)
            )
        self.assertEqual(self.log.count_events("conv_a"), 0)

    def test_replay_accepts_sync_and_async_handlers(self) -> None:
        for index in range(3):
            self._run(self.log.append("conv_a", EVENT_USER_MESSAGE, {"n": index}))

        seen_sync: list[int] = []
        seen_async: list[int] = []

        async def async_handler(event) -> None:
            await asyncio.sleep(0)
            seen_async.append(event.sequence_number)

        count = self._run(
            self.log.replay("conv_a", lambda e: seen_sync.append(e.sequence_number))
        )
        self._run(self.log.replay("conv_a", async_handler))

        self.assertEqual(count, 3)
        self.assertEqual(seen_sync, [0, 1, 2])
        self.assertEqual(seen_async, [0, 1, 2])

    def test_mark_processed_is_idempotent(self) -> None:
        event = self._run(self.log.append("conv_a", EVENT_MESSAGE_SENT, {"content": "x"}))

        self.log.mark_processed(event.id)
        self.log.mark_processed(event.id)
        self.log.mark_processed("event_missing")

        self.assertTrue(self.log.get_event(event.id).processed)
        self.assertEqual(self.log.get_unprocessed_events("conv_a"), [])

    def test_last_sequence_and_last_event(self) -> None:
        self.assertEqual(self.log.last_sequence_number("conv_a"), -1)
        self.assertIsNone(self.log.last_event_id("conv_a"))

        self._run(self.log.append("conv_a", EVENT_USER_MESSAGE, {}))
        last = self._run(self.log.append("conv_a", EVENT_MESSAGE_SENT, {}))

        self.assertEqual(self.log.last_sequence_number("conv_a"), 1)
        self.assertEqual(self.log.last_event_id("conv_a"), last.id)

    def test_purge_removes_only_target_conversation(self) -> None:
        self._run(self.log.append("conv_a", EVENT_USER_MESSAGE, {}))
        self._run(self.log.append("conv_b", EVENT_USER_MESSAGE, {}))

        counts = self.log.purge_conversation("conv_a")

        self.assertEqual(counts["message_events"], 1)
        self.assertEqual(self.log.count_events("conv_a"), 0)
        self.assertEqual(self.log.count_events("conv_b"), 1)


if __name__ == "__main__":
    unittest.main()
