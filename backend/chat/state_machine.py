from __future__ import annotations

import logging
from typing import Any, Callable

STATE_IDLE = "idle"
STATE_REASONING = "reasoning"
STATE_REASONING_TO_CONTENT = "reasoning_to_content"
STATE_CONTENT = "content"
STATE_TOOL_PENDING = "tool_pending"
STATE_TERMINAL = "terminal"

NORMALIZER_STATE_TRANSITIONS: dict[str, set[str]] = {
    STATE_IDLE: {STATE_REASONING, STATE_CONTENT, STATE_TOOL_PENDING, STATE_TERMINAL},
    STATE_REASONING: {STATE_REASONING_TO_CONTENT, STATE_TOOL_PENDING, STATE_TERMINAL},
    STATE_REASONING_TO_CONTENT: {STATE_CONTENT},
    STATE_CONTENT: {STATE_REASONING, STATE_TOOL_PENDING, STATE_TERMINAL},
    STATE_TOOL_PENDING: {
        STATE_REASONING,
        STATE_REASONING_TO_CONTENT,
        STATE_CONTENT,
        STATE_TERMINAL,
    },
    STATE_TERMINAL: set(),
}


def transition_state(
    *,
    current_state: str,
    to_state: str,
    reason: str,
    transitions: list[dict[str, Any]],
    turn_id: str,
    logger: logging.Logger,
    debug_log: Callable[..., None] | None = None,
) -> str:
    """Record a normalizer state change.

    The provider stream is authoritative, so an unexpected edge is logged and
    recorded but still taken.
    """
    if current_state == to_state:
        return current_state

    allowed = NORMALIZER_STATE_TRANSITIONS.get(current_state, set())
    if to_state not in allowed:
        logger.warning(
            "Unexpected stream state transition: %s -> %s (%s)",
            current_state,
            to_state,
            reason,
        )
        reason = f"invalid_transition:{current_state}->{to_state}:{reason}"

    transitions.append({"from": current_state, "to": to_state, "reason": reason})
    if debug_log is not None:
        debug_log(
            run_id=turn_id,
            hypothesis_id="STREAM_NORMALIZER",
            location="backend/chat/state_machine.py:transition_state",
            message="State transition",
            data={
                "turn_id": turn_id,
                "from": current_state,
                "to": to_state,
                "reason": reason,
            },
        )
    return to_state
