from .openai_adapter import OpenAiAdapter

__all__ = ["OpenAiAdapter"]
