from .llm_client import (
    ChatMessage,
    LlmClient,
    StreamFragment,
    ToolCall,
    ToolDefinition,
)
from .factory import build_llm_client

__all__ = [
    "ChatMessage",
    "LlmClient",
    "StreamFragment",
    "ToolCall",
    "ToolDefinition",
    "build_llm_client",
]
