from __future__ import annotations


class CounterUnavailableError(RuntimeError):
    """The shared counter service could not be reached."""


class SequenceAllocationError(RuntimeError):
    pass


class RateLimitExceededError(RuntimeError):
    def __init__(self, conversation_id: str, count: int, limit: int) -> None:
        super().__init__(
            f"Rate limit exceeded for conversation {conversation_id}. "
            f"Max {limit} jobs per window (saw {count})."
        )
        self.conversation_id = conversation_id
        self.count = count
        self.limit = limit


class QueueUnavailableError(RuntimeError):
    pass


class PersistenceError(RuntimeError):
    """Both the queue and the direct read-model write failed."""

    def __init__(
        self,
        message: str,
        *,
        queue_error: BaseException,
        fallback_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.queue_error = queue_error
        self.fallback_error = fallback_error


class ApprovalError(RuntimeError):
    pass


class ProviderStreamError(RuntimeError):
    pass
