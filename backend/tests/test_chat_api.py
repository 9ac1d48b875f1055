import asyncio
import json
import tempfile
import unittest
from pathlib import Path

import meta
from api import approvals as approvals_api
from api import chat as chat_api
from api import conversations as conversations_api
from api import queue as queue_api
from chat.errors import PersistenceError, QueueUnavailableError, RateLimitExceededError
from chat.llm_client import StreamFragment
from fastapi import HTTPException
from fastapi.responses import StreamingResponse
from services.chat_runtime import build_chat_runtime, install_chat_runtime
from services.settings import RuntimeSettings


class FakeLlmClient:
    """Streams one scripted response per call; each response is text and/or tool calls."""

    model = "fake-model"

    def __init__(self, responses: list[dict]) -> None:
        self._responses = list(responses)
        self.calls = 0

    async def generate_stream(self, **kwargs):
        self.calls += 1
        if not self._responses:
            raise AssertionError("No fake responses left for LLM generate_stream()")
        response = self._responses.pop(0)

        for ch in response.get("text", ""):
            yield StreamFragment(type="text", text=ch)

        for index, (tool_id, name, arguments) in enumerate(response.get("tools", [])):
            yield StreamFragment(
                type="tool_call_start",
                tool_call_id=tool_id,
                tool_name=name,
                block_index=index,
            )
            yield StreamFragment(
                type="tool_call_delta",
                tool_call_id=tool_id,
                arguments_delta=json.dumps(arguments, ensure_ascii=True),
                block_index=index,
            )
            yield StreamFragment(type="tool_call_done", tool_call_id=tool_id, block_index=index)
        yield StreamFragment(type="end")


async def _echo_tool(tool_name: str, arguments: dict):
    return {"tool": tool_name, "arguments": arguments}


class ChatApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        temp_root = Path(self.temp_dir.name)

        meta.DB_DIR = temp_root / "data"
        meta.DB_PATH = meta.DB_DIR / "meta.db"
        meta.init_meta_db()

    def tearDown(self) -> None:
        install_chat_runtime(None)
        self.temp_dir.cleanup()

    def _scenario(self, llm: FakeLlmClient, body):
        """Run ``body(runtime)`` against a started runtime on a fresh loop."""

        async def wrapper():
            runtime = build_chat_runtime(
                RuntimeSettings(queue_concurrency=2, approval_ttl_seconds=5),
                llm_client=llm,
                tool_executor=_echo_tool,
            )
            install_chat_runtime(runtime)
            await runtime.start()
            try:
                return await body(runtime)
            finally:
                await runtime.shutdown()

        return asyncio.run(wrapper())

    async def _consume_stream(self, response: StreamingResponse) -> str:
        chunks: list[str] = []
        async for chunk in response.body_iterator:
            if isinstance(chunk, bytes):
                chunks.append(chunk.decode("utf-8"))
            else:
                chunks.append(str(chunk))
        return "".join(chunks)

    def _extract_sse_frames(self, raw_stream: str) -> list[tuple[str, dict]]:
        frames: list[tuple[str, dict]] = []
        for frame in raw_stream.split("\n\n"):
            frame = frame.strip()
            if not frame:
                continue
            event_name = "message"
            data_lines: list[str] = []
            for line in frame.splitlines():
                if line.startswith("event: "):
                    event_name = line[len("event: ") :]
                elif line.startswith("data: "):
                    data_lines.append(line[len("data: ") :])
            if data_lines:
                frames.append((event_name, json.loads("\n".join(data_lines))))
        return frames

    def test_chat_persists_turn_and_read_model(self) -> None:
        llm = FakeLlmClient([{"text": "Hello!"}])

        async def body(runtime):
            response = await chat_api.chat(
                chat_api.ChatRequest(message="hi", conversation_id="conv_api")
            )
            await runtime.queue.join()
            events = await conversations_api.get_conversation_events(
                "conv_api", from_seq=None, to_seq=None
            )
            window = await conversations_api.get_conversation_events(
                "conv_api", from_seq=1, to_seq=1
            )
            messages = await conversations_api.get_conversation_messages("conv_api")
            return response, events, window, messages

        response, events, window, messages = self._scenario(llm, body)

        self.assertEqual(response["conversation_id"], "conv_api")
        self.assertEqual(response["content"], "Hello!")
        self.assertEqual(response["stop_reason"], "end_turn")
        self.assertEqual(
            [e["type"] for e in events["events"]],
            ["session_started", "user_message_sent", "agent_message_sent"],
        )
        self.assertEqual([e["type"] for e in window["events"]], ["user_message_sent"])
        self.assertEqual(
            [(m["role"], m["content"]) for m in messages["messages"]],
            [("user", "hi"), ("assistant", "Hello!")],
        )

    def test_chat_without_conversation_id_starts_new_conversation(self) -> None:
        llm = FakeLlmClient([{"text": "ok"}])

        async def body(runtime):
            return await chat_api.chat(chat_api.ChatRequest(message="hi"))

        response = self._scenario(llm, body)
        self.assertTrue(response["conversation_id"].startswith("conv_"))

    def test_blank_message_is_rejected(self) -> None:
        llm = FakeLlmClient([])

        async def body(runtime):
            with self.assertRaises(HTTPException) as ctx:
                await chat_api.chat(chat_api.ChatRequest(message="   ", conversation_id="c"))
            return ctx.exception

        exc = self._scenario(llm, body)
        self.assertEqual(exc.status_code, 400)
        self.assertEqual(llm.calls, 0)

    def test_events_endpoint_validates_range_and_existence(self) -> None:
        llm = FakeLlmClient([])

        async def body(runtime):
            with self.assertRaises(HTTPException) as bad_range:
                await conversations_api.get_conversation_events("conv_x", from_seq=5, to_seq=1)
            with self.assertRaises(HTTPException) as missing:
                await conversations_api.get_conversation_events(
                    "conv_x", from_seq=None, to_seq=None
                )
            return bad_range.exception, missing.exception

        bad_range, missing = self._scenario(llm, body)
        self.assertEqual(bad_range.status_code, 400)
        self.assertEqual(missing.status_code, 404)

    def test_chat_stream_returns_sse_frames(self) -> None:
        llm = FakeLlmClient(
            [
                {"tools": [("call_1", "lookup", {"id": 1})]},
                {"text": "Found it."},
            ]
        )

        async def body(runtime):
            response = await chat_api.chat_stream(
                chat_api.ChatRequest(message="find 1", conversation_id="conv_sse")
            )
            raw = await self._consume_stream(response)
            return response, raw

        response, raw = self._scenario(llm, body)

        self.assertEqual(response.media_type, "text/event-stream")
        self.assertEqual(response.headers["x-conversation-id"], "conv_sse")
        frames = self._extract_sse_frames(raw)
        self.assertEqual(frames[-1][0], "done")
        self.assertEqual(frames[-1][1]["content"], "Found it.")

        notification_types = [
            payload["notification"]["type"]
            for name, payload in frames
            if name == "notification"
        ]
        self.assertEqual(notification_types[0], "tool_execution")
        self.assertIn("tool_result", notification_types)
        self.assertEqual(notification_types[-1], "final_response")
        self.assertEqual(
            [payload["seq"] for _, payload in frames],
            list(range(1, len(frames) + 1)),
        )

    def test_chat_stream_reports_turn_errors_as_error_frame(self) -> None:
        llm = FakeLlmClient([])

        async def body(runtime):
            response = await chat_api.chat_stream(
                chat_api.ChatRequest(message=" ", conversation_id="conv_err")
            )
            return await self._consume_stream(response)

        frames = self._extract_sse_frames(self._scenario(llm, body))
        self.assertEqual(len(frames), 1)
        self.assertEqual(frames[0][0], "error")
        self.assertEqual(frames[0][1]["status_code"], 400)

    def test_write_tool_waits_for_approval_endpoint(self) -> None:
        llm = FakeLlmClient(
            [
                {"tools": [("call_w", "create_ticket", {"title": "Printer"})]},
                {"text": "Ticket created."},
            ]
        )

        async def body(runtime):
            turn = asyncio.create_task(
                chat_api.chat(
                    chat_api.ChatRequest(message="open a ticket", conversation_id="conv_appr")
                )
            )
            pending: list = []
            for _ in range(100):
                listing = await conversations_api.get_pending_approvals("conv_appr")
                pending = listing["approvals"]
                if pending:
                    break
                await asyncio.sleep(0.01)

            with self.assertRaises(HTTPException) as busy:
                await conversations_api.delete_conversation("conv_appr")

            approval_id = pending[0]["id"]
            fetched = await approvals_api.get_approval(approval_id)
            decided = await approvals_api.respond_to_approval(
                approval_id,
                approvals_api.ApprovalResponseRequest(decision="approved", decided_by="ops"),
            )
            response = await turn
            with self.assertRaises(HTTPException) as again:
                await approvals_api.respond_to_approval(
                    approval_id,
                    approvals_api.ApprovalResponseRequest(decision="rejected"),
                )
            with self.assertRaises(HTTPException) as unknown:
                await approvals_api.get_approval("approval_missing")
            return busy.exception, fetched, decided, response, again.exception, unknown.exception

        busy, fetched, decided, response, again, unknown = self._scenario(llm, body)

        self.assertEqual(busy.status_code, 409)
        self.assertEqual(fetched["tool_name"], "create_ticket")
        self.assertEqual(fetched["priority"], "medium")
        self.assertEqual(decided["status"], "approved")
        self.assertEqual(decided["decided_by"], "ops")
        self.assertEqual(response["content"], "Ticket created.")
        self.assertEqual(again.status_code, 409)
        self.assertEqual(unknown.status_code, 404)

    def test_rebuild_and_delete_conversation(self) -> None:
        llm = FakeLlmClient([{"text": "one"}])

        async def body(runtime):
            await chat_api.chat(chat_api.ChatRequest(message="hi", conversation_id="conv_rb"))
            await runtime.queue.join()
            rebuilt = await conversations_api.rebuild_conversation("conv_rb")
            messages = await conversations_api.get_conversation_messages("conv_rb")
            deleted = await conversations_api.delete_conversation("conv_rb")
            with self.assertRaises(HTTPException) as gone:
                await conversations_api.get_conversation_messages("conv_rb")
            return rebuilt, messages, deleted, gone.exception

        rebuilt, messages, deleted, gone = self._scenario(llm, body)

        self.assertEqual(rebuilt["messages"], 2)
        self.assertEqual(len(messages["messages"]), 2)
        self.assertEqual(deleted["deleted"]["message_events"], 3)
        self.assertEqual(gone.status_code, 404)

    def test_stop_without_active_turn(self) -> None:
        async def body(runtime):
            return await chat_api.stop_conversation_turn("conv_idle")

        response = self._scenario(FakeLlmClient([]), body)
        self.assertEqual(response, {"conversation_id": "conv_idle", "stopped": False})

    def test_queue_endpoints(self) -> None:
        llm = FakeLlmClient([{"text": "ok"}])

        async def body(runtime):
            await chat_api.chat(chat_api.ChatRequest(message="hi", conversation_id="conv_q"))
            await runtime.queue.join()
            status = await queue_api.get_queue_status(conversation_id="conv_q")
            with self.assertRaises(HTTPException) as missing:
                await queue_api.retry_failed_job("job_missing")
            return status, missing.exception

        status, missing = self._scenario(llm, body)

        self.assertTrue(status["queue"]["accepting"])
        self.assertEqual(status["queue"]["completed"], 2)
        self.assertEqual(status["rate_limit"]["count"], 2)
        self.assertEqual(status["failed_jobs"], [])
        self.assertEqual(missing.status_code, 404)


class TurnErrorMappingTests(unittest.TestCase):
    def test_persistence_failures_map_to_status_codes(self) -> None:
        self.assertEqual(
            chat_api.turn_error_to_http(RateLimitExceededError("c", 101, 100)).status_code,
            429,
        )
        self.assertEqual(
            chat_api.turn_error_to_http(
                PersistenceError("x", queue_error=QueueUnavailableError("down"))
            ).status_code,
            503,
        )
        self.assertEqual(chat_api.turn_error_to_http(ValueError("bad")).status_code, 400)
        self.assertEqual(chat_api.turn_error_to_http(RuntimeError("?")).status_code, 500)


if __name__ == "__main__":
    unittest.main()
