from __future__ import annotations

"""Error taxonomy shared by providers, the relay and the HTTP layer."""

from typing import Optional


class UpstreamError(Exception):
    """Base class for failures reported by the completion provider."""

    retryable: bool = False
    kind: str = "upstream"

    def __init__(self, message: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.status_code = status_code


class UpstreamRateLimited(UpstreamError):
    retryable = True
    kind = "rate_limited"

    def __init__(
        self,
        message: str = "Too many requests",
        retry_after_seconds: Optional[float] = None,
        status_code: Optional[int] = 429,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after_seconds = retry_after_seconds


class UpstreamRejected(UpstreamError):
    kind = "rejected"


class UpstreamTransportFailure(UpstreamError):
    retryable = True
    kind = "transport"


class StreamTimeout(UpstreamTransportFailure):
    kind = "timeout"


class PersistenceFailure(Exception):
    """The final message write for a stream session failed."""

    def __init__(self, chat_id: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Failed to persist assistant message for chat {chat_id}")
        self.chat_id = chat_id
        self.cause = cause
