from __future__ import annotations

import os

from chat.adapters.openai_adapter import OpenAiAdapter
from chat.llm_client import LlmClient
from env_loader import load_env_once


def build_llm_client(
    *,
    provider: str | None = None,
    model: str | None = None,
    api_key: str | None = None,
) -> LlmClient:
    load_env_once()

    resolved_provider = (provider or os.getenv("LLM_PROVIDER", "openai")).lower().strip()
    if resolved_provider == "openai":
        return OpenAiAdapter(
            model=model or os.getenv("OPENAI_MODEL", "gpt-4.1-mini"),
            api_key=api_key or os.getenv("OPENAI_API_KEY"),
            reasoning_effort=os.getenv("OPENAI_REASONING_EFFORT") or None,
        )

    raise ValueError(f"Unsupported LLM provider: {resolved_provider}")
