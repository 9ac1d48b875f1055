import asyncio
import unittest

from chat.events import (
    FinalResponse,
    MessageChunk,
    ReasoningChunk,
    ReasoningFinalized,
    ToolExecution,
    UsageReport,
)
from chat.llm_client import StreamFragment
from chat.stream_normalizer import StreamNormalizer


def _feed_all(normalizer: StreamNormalizer, fragments: list[StreamFragment]) -> list:
    events = []
    for fragment in fragments:
        events.extend(normalizer.feed(fragment))
    return events


class StreamNormalizerTests(unittest.TestCase):
    def test_reasoning_is_finalized_once_before_first_content(self) -> None:
        normalizer = StreamNormalizer(turn_id="turn_1")
        events = _feed_all(
            normalizer,
            [
                StreamFragment(type="reasoning", text="Let me "),
                StreamFragment(type="reasoning", text="think."),
                StreamFragment(type="text", text="Hello"),
                StreamFragment(type="text", text=" world"),
                StreamFragment(type="end"),
            ],
        )

        self.assertEqual(
            events,
            [
                ReasoningChunk(content="Let me "),
                ReasoningChunk(content="think."),
                ReasoningFinalized(content="Let me think."),
                MessageChunk(content="Hello"),
                MessageChunk(content=" world"),
                FinalResponse(content="Hello world", stop_reason="end_turn"),
            ],
        )
        self.assertTrue(normalizer.terminal)

    def test_reasoning_after_content_is_not_finalized_again(self) -> None:
        normalizer = StreamNormalizer()
        events = _feed_all(
            normalizer,
            [
                StreamFragment(type="reasoning", text="a"),
                StreamFragment(type="text", text="b"),
                StreamFragment(type="reasoning", text="c"),
                StreamFragment(type="text", text="d"),
                StreamFragment(type="end"),
            ],
        )

        finalized = [e for e in events if isinstance(e, ReasoningFinalized)]
        self.assertEqual(finalized, [ReasoningFinalized(content="a")])

    def test_content_without_reasoning(self) -> None:
        normalizer = StreamNormalizer()
        events = _feed_all(
            normalizer,
            [StreamFragment(type="text", text="Hi"), StreamFragment(type="end")],
        )

        self.assertEqual(
            events,
            [MessageChunk(content="Hi"), FinalResponse(content="Hi")],
        )

    def test_reasoning_only_stream_finalizes_at_end(self) -> None:
        normalizer = StreamNormalizer()
        events = _feed_all(
            normalizer,
            [StreamFragment(type="reasoning", text="hmm")],
        )
        events.extend(normalizer.finish())

        self.assertEqual(
            events,
            [ReasoningChunk(content="hmm"), ReasoningFinalized(content="hmm")],
        )
        self.assertEqual(normalizer.finish(), [])

    def test_empty_deltas_are_ignored(self) -> None:
        normalizer = StreamNormalizer()
        events = _feed_all(
            normalizer,
            [
                StreamFragment(type="reasoning", text=""),
                StreamFragment(type="text", text=None),
                StreamFragment(type="end"),
            ],
        )
        self.assertEqual(events, [])

    def test_tool_call_emitted_at_start_and_arguments_assembled(self) -> None:
        normalizer = StreamNormalizer()
        events = _feed_all(
            normalizer,
            [
                StreamFragment(
                    type="tool_call_start",
                    tool_call_id="call_1",
                    tool_name="search_docs",
                    block_index=0,
                ),
                StreamFragment(
                    type="tool_call_delta",
                    tool_call_id="call_1",
                    arguments_delta='{"query": ',
                    block_index=0,
                ),
                StreamFragment(
                    type="tool_call_delta",
                    tool_call_id="call_1",
                    arguments_delta='"ledger"}',
                    block_index=0,
                ),
                StreamFragment(type="tool_call_done", tool_call_id="call_1", block_index=0),
                StreamFragment(type="end", stop_reason="tool_use"),
            ],
        )

        self.assertEqual(
            events,
            [ToolExecution(tool_use_id="call_1", tool_name="search_docs", input={})],
        )
        calls = normalizer.pending_tool_calls()
        self.assertEqual(len(calls), 1)
        self.assertEqual(calls[0].arguments, {"query": "ledger"})
        self.assertEqual(normalizer.tool_call_arguments("call_1"), {"query": "ledger"})
        self.assertIsNone(normalizer.tool_call_arguments("call_unknown"))
        self.assertEqual(normalizer.stop_reason, "tool_use")

    def test_argument_deltas_labelled_with_item_id_reach_the_open_call(self) -> None:
        normalizer = StreamNormalizer()
        _feed_all(
            normalizer,
            [
                StreamFragment(
                    type="tool_call_start",
                    tool_call_id="call_abc",
                    tool_name="lookup",
                    block_index=0,
                ),
                StreamFragment(
                    type="tool_call_delta",
                    tool_call_id="item_9",
                    arguments_delta='{"id": 7}',
                    block_index=0,
                ),
            ],
        )

        self.assertEqual(normalizer.tool_call_arguments("call_abc"), {"id": 7})

    def test_malformed_arguments_are_kept_raw(self) -> None:
        normalizer = StreamNormalizer()
        _feed_all(
            normalizer,
            [
                StreamFragment(type="tool_call_start", tool_call_id="call_1", tool_name="x"),
                StreamFragment(
                    type="tool_call_delta", tool_call_id="call_1", arguments_delta="{oops"
                ),
            ],
        )

        self.assertEqual(normalizer.pending_tool_calls()[0].arguments, {"_raw": "{oops"})

    def test_tool_calls_seen_in_earlier_turns_are_suppressed(self) -> None:
        normalizer = StreamNormalizer(seen_tool_ids={"call_old"})
        events = _feed_all(
            normalizer,
            [
                StreamFragment(
                    type="tool_call_start",
                    tool_call_id="call_old",
                    tool_name="lookup",
                    block_index=0,
                ),
                StreamFragment(
                    type="tool_call_start",
                    tool_call_id="call_new",
                    tool_name="lookup",
                    block_index=1,
                ),
            ],
        )

        self.assertEqual([e.tool_use_id for e in events], ["call_new"])
        self.assertEqual([c.id for c in normalizer.pending_tool_calls()], ["call_new"])

    def test_duplicate_tool_call_within_stream_is_emitted_once(self) -> None:
        normalizer = StreamNormalizer()
        events = _feed_all(
            normalizer,
            [
                StreamFragment(
                    type="tool_call_start", tool_call_id="call_1", tool_name="a", block_index=0
                ),
                StreamFragment(
                    type="tool_call_start", tool_call_id="call_1", tool_name="a", block_index=0
                ),
                StreamFragment(
                    type="tool_call_start", tool_call_id="call_1", tool_name="a", block_index=2
                ),
            ],
        )

        self.assertEqual(len([e for e in events if isinstance(e, ToolExecution)]), 1)
        self.assertEqual(len(normalizer.pending_tool_calls()), 1)

    def test_tool_calls_keep_arrival_order(self) -> None:
        normalizer = StreamNormalizer()
        _feed_all(
            normalizer,
            [
                StreamFragment(
                    type="tool_call_start", tool_call_id="t1", tool_name="a", block_index=1
                ),
                StreamFragment(
                    type="tool_call_start", tool_call_id="t2", tool_name="b", block_index=0
                ),
                StreamFragment(
                    type="tool_call_start", tool_call_id="t3", tool_name="c", block_index=2
                ),
            ],
        )

        self.assertEqual([c.id for c in normalizer.pending_tool_calls()], ["t1", "t2", "t3"])

    def test_missing_tool_call_id_gets_synthetic_id(self) -> None:
        normalizer = StreamNormalizer(turn_id="turn_7")
        events = normalizer.feed(
            StreamFragment(type="tool_call_start", tool_name="lookup", block_index=3)
        )
        self.assertEqual(events[0].tool_use_id, "call_turn_7_3")

    def test_tool_only_stream_has_no_final_response(self) -> None:
        normalizer = StreamNormalizer()
        events = _feed_all(
            normalizer,
            [
                StreamFragment(type="tool_call_start", tool_call_id="t1", tool_name="a"),
                StreamFragment(type="end"),
            ],
        )
        self.assertFalse(any(isinstance(e, FinalResponse) for e in events))

    def test_stop_fragment_sets_final_stop_reason(self) -> None:
        normalizer = StreamNormalizer()
        events = _feed_all(
            normalizer,
            [
                StreamFragment(type="text", text="partial"),
                StreamFragment(type="usage", input_tokens=12, output_tokens=30),
                StreamFragment(type="stop", stop_reason="max_tokens"),
                StreamFragment(type="end"),
            ],
        )

        self.assertIn(UsageReport(input_tokens=12, output_tokens=30), events)
        self.assertEqual(events[-1], FinalResponse(content="partial", stop_reason="max_tokens"))

    def test_fragments_after_end_are_ignored(self) -> None:
        normalizer = StreamNormalizer()
        normalizer.feed(StreamFragment(type="end"))

        with self.assertLogs("chat.stream_normalizer", level="WARNING"):
            events = normalizer.feed(StreamFragment(type="text", text="late"))

        self.assertEqual(events, [])
        self.assertEqual(normalizer.content, "")

    def test_normalize_drives_async_stream_and_records_transitions(self) -> None:
        async def fragments():
            yield StreamFragment(type="reasoning", text="r")
            yield StreamFragment(type="text", text="c")

        async def collect(normalizer):
            return [event async for event in normalizer.normalize(fragments())]

        normalizer = StreamNormalizer()
        events = asyncio.run(collect(normalizer))

        self.assertEqual(
            [type(e).__name__ for e in events],
            [
                "ReasoningChunk",
                "ReasoningFinalized",
                "MessageChunk",
                "FinalResponse",
            ],
        )
        self.assertEqual(
            [t["to"] for t in normalizer.transitions],
            ["reasoning", "reasoning_to_content", "content", "terminal"],
        )


if __name__ == "__main__":
    unittest.main()
