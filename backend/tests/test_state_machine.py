import logging
import unittest

from chat.state_machine import (
    STATE_CONTENT,
    STATE_IDLE,
    STATE_REASONING,
    STATE_REASONING_TO_CONTENT,
    STATE_TERMINAL,
    transition_state,
)

logger = logging.getLogger("tests.state_machine")


class StateMachineTests(unittest.TestCase):
    def test_valid_transition_is_recorded(self) -> None:
        transitions: list[dict] = []

        next_state = transition_state(
            current_state=STATE_IDLE,
            to_state=STATE_REASONING,
            reason="reasoning_fragment",
            transitions=transitions,
            turn_id="turn_test",
            logger=logger,
        )

        self.assertEqual(next_state, STATE_REASONING)
        self.assertEqual(
            transitions,
            [{"from": "idle", "to": "reasoning", "reason": "reasoning_fragment"}],
        )

    def test_same_state_is_not_recorded(self) -> None:
        transitions: list[dict] = []

        next_state = transition_state(
            current_state=STATE_CONTENT,
            to_state=STATE_CONTENT,
            reason="content_fragment",
            transitions=transitions,
            turn_id="turn_test",
            logger=logger,
        )

        self.assertEqual(next_state, STATE_CONTENT)
        self.assertEqual(transitions, [])

    def test_unexpected_transition_is_logged_and_taken(self) -> None:
        transitions: list[dict] = []

        with self.assertLogs("tests.state_machine", level="WARNING"):
            next_state = transition_state(
                current_state=STATE_REASONING_TO_CONTENT,
                to_state=STATE_TERMINAL,
                reason="end_of_turn",
                transitions=transitions,
                turn_id="turn_test",
                logger=logger,
            )

        self.assertEqual(next_state, STATE_TERMINAL)
        self.assertTrue(transitions[-1]["reason"].startswith("invalid_transition:"))

    def test_debug_log_receives_transition(self) -> None:
        captured: list[dict] = []

        transition_state(
            current_state=STATE_IDLE,
            to_state=STATE_CONTENT,
            reason="content_fragment",
            transitions=[],
            turn_id="turn_dbg",
            logger=logger,
            debug_log=lambda **kwargs: captured.append(kwargs),
        )

        self.assertEqual(len(captured), 1)
        self.assertEqual(captured[0]["run_id"], "turn_dbg")
        self.assertEqual(captured[0]["data"]["to"], "content")


if __name__ == "__main__":
    unittest.main()
