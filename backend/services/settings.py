from __future__ import annotations

import os
from dataclasses import dataclass

from chat.approvals import DEFAULT_APPROVAL_TTL_SECONDS
from chat.engine import DEFAULT_MAX_TURNS
from chat.sequence import DEFAULT_COUNTER_TTL_SECONDS
from chat.tooling import DEFAULT_WRITE_TOOL_PREFIXES
from env_loader import load_env_once


def _from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_from_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _prefixes_from_env(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class RuntimeSettings:
    counter_ttl_seconds: float = DEFAULT_COUNTER_TTL_SECONDS
    queue_concurrency: int = 10
    queue_max_attempts: int = 3
    queue_backoff_seconds: float = 1.0
    queue_drain_timeout_seconds: float = 10.0
    rate_limit_max_jobs: int = 100
    rate_limit_window_seconds: float = 3600
    approval_ttl_seconds: float = DEFAULT_APPROVAL_TTL_SECONDS
    max_turns: int = DEFAULT_MAX_TURNS
    max_output_tokens: int | None = None
    write_tool_prefixes: tuple[str, ...] = DEFAULT_WRITE_TOOL_PREFIXES
    llm_provider: str | None = None
    llm_model: str | None = None

    @classmethod
    def from_env(cls) -> RuntimeSettings:
        load_env_once()
        max_output_tokens = _from_env("AGENT_MAX_OUTPUT_TOKENS", 0)
        return cls(
            counter_ttl_seconds=_float_from_env(
                "SEQUENCE_COUNTER_TTL_SECONDS", DEFAULT_COUNTER_TTL_SECONDS
            ),
            queue_concurrency=_from_env("PERSISTENCE_QUEUE_CONCURRENCY", 10),
            queue_max_attempts=_from_env("PERSISTENCE_QUEUE_MAX_ATTEMPTS", 3),
            queue_backoff_seconds=_float_from_env("PERSISTENCE_QUEUE_BACKOFF_SECONDS", 1.0),
            queue_drain_timeout_seconds=_float_from_env(
                "PERSISTENCE_QUEUE_DRAIN_TIMEOUT_SECONDS", 10.0
            ),
            rate_limit_max_jobs=_from_env("PERSISTENCE_RATE_LIMIT_MAX_JOBS", 100),
            rate_limit_window_seconds=_float_from_env(
                "PERSISTENCE_RATE_LIMIT_WINDOW_SECONDS", 3600
            ),
            approval_ttl_seconds=_float_from_env(
                "APPROVAL_TTL_SECONDS", DEFAULT_APPROVAL_TTL_SECONDS
            ),
            max_turns=_from_env("AGENT_MAX_TURNS", DEFAULT_MAX_TURNS),
            max_output_tokens=max_output_tokens if max_output_tokens > 0 else None,
            write_tool_prefixes=_prefixes_from_env(
                "WRITE_TOOL_PREFIXES", DEFAULT_WRITE_TOOL_PREFIXES
            ),
            llm_provider=os.getenv("LLM_PROVIDER"),
            llm_model=os.getenv("LLM_MODEL"),
        )
