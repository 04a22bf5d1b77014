"""Exception taxonomy for responses-engine."""

from __future__ import annotations

__all__ = [
    "FatalClientError",
    "ModelClientError",
    "ProtocolDecodeError",
    "ResponseFailedError",
    "RetryableHttpError",
    "RetryableTransportError",
    "StreamAbortedError",
    "StreamError",
    "StreamTimeoutError",
]


class ModelClientError(Exception):
    """Base exception for all errors raised by the engine."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        provider: str | None = None,
        retryable: bool = False,
        retry_after_ms: float | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.provider = provider
        self.retryable = retryable
        self.retry_after_ms = retry_after_ms


class ProtocolDecodeError(ModelClientError):
    """A ``data:`` frame could not be decoded.

    ``frame_index`` is the zero-based ordinal of the offending frame within
    the current response body, or ``None`` when the failure is not tied to
    one frame (e.g. the body ended before ``response.completed``).
    """

    def __init__(
        self,
        message: str,
        frame_index: int | None = None,
        raw: str = "",
    ) -> None:
        super().__init__(message)
        self.frame_index = frame_index
        self.raw = raw


class ResponseFailedError(ModelClientError):
    """The server sent an explicit ``response.failed`` frame."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        retry_after_ms: float | None = None,
    ) -> None:
        super().__init__(message, retry_after_ms=retry_after_ms)
        self.code = code


class RetryableHttpError(ModelClientError):
    """HTTP failure (401, 429, 5xx) that survived all retry attempts."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        provider: str | None = None,
        retry_after_ms: float | None = None,
    ) -> None:
        super().__init__(
            message,
            status_code=status_code,
            provider=provider,
            retryable=True,
            retry_after_ms=retry_after_ms,
        )


class RetryableTransportError(ModelClientError):
    """Network or timeout failure that survived all retry attempts."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message, provider=provider, retryable=True)


class FatalClientError(ModelClientError):
    """Non-retryable failure (client-side 4xx, bad configuration, ...)."""


class StreamError(ModelClientError):
    """Base for failures raised while consuming a ``ResponseStream``."""


class StreamTimeoutError(StreamError):
    """No event arrived within the configured idle timeout."""

    def __init__(self, timeout_ms: float) -> None:
        super().__init__(f"Event timeout after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class StreamAbortedError(StreamError):
    """The stream was cancelled through its abort signal."""

    def __init__(self, message: str = "Stream aborted") -> None:
        super().__init__(message)
