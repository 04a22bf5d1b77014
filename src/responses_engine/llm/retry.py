"""Request-attempt failure classification and backoff computation."""

from __future__ import annotations

import enum
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

from responses_engine.errors import (
    FatalClientError,
    ModelClientError,
    RetryableHttpError,
    RetryableTransportError,
)

# Substrings (lower-cased) that mark a transport failure as transient
_TRANSPORT_SIGNATURES = ("network", "timeout", "econnreset", "enotfound", "econnrefused")


@dataclass
class RetryPolicy:
    """Backoff parameters for retrying a failed request attempt."""

    max_retries: int = 3
    base_delay_ms: float = 1000
    max_delay_ms: float = 30_000
    multiplier: float = 2.0
    jitter: float = 0.1


class AttemptErrorKind(enum.Enum):
    RETRYABLE_HTTP = "retryable_http"
    RETRYABLE_TRANSPORT = "retryable_transport"
    FATAL = "fatal"


def parse_retry_after(value: str | None) -> float | None:
    """Convert a ``retry-after`` header value to milliseconds.

    Accepts delta-seconds (``"2"``, ``"1.5"``) or an HTTP date.  Returns
    ``None`` for anything unparseable; dates in the past give ``0``.
    """
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - datetime.now(timezone.utc)).total_seconds()
        return max(seconds, 0.0) * 1000
    if seconds != seconds or seconds < 0 or seconds == float("inf"):
        return None
    return seconds * 1000


class StreamAttemptError(Exception):
    """Classification of one failed request attempt.

    Build instances with :meth:`from_http_status` or :meth:`from_exception`;
    the orchestrator asks :meth:`is_retryable`, sleeps :meth:`delay` and
    finally raises :meth:`into_error`.
    """

    def __init__(
        self,
        kind: AttemptErrorKind,
        status: int | None = None,
        retry_after_ms: float | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(kind.value)
        self.kind = kind
        self.status = status
        self.retry_after_ms = retry_after_ms
        self.cause = cause

    # -- constructors --------------------------------------------------

    @classmethod
    def retryable_http(
        cls, status: int, retry_after_ms: float | None = None,
    ) -> StreamAttemptError:
        return cls(AttemptErrorKind.RETRYABLE_HTTP, status=status, retry_after_ms=retry_after_ms)

    @classmethod
    def retryable_transport(cls, cause: BaseException) -> StreamAttemptError:
        return cls(AttemptErrorKind.RETRYABLE_TRANSPORT, cause=cause)

    @classmethod
    def fatal(cls, cause: BaseException, status: int | None = None) -> StreamAttemptError:
        return cls(AttemptErrorKind.FATAL, status=status, cause=cause)

    @classmethod
    def from_http_status(
        cls,
        status: int,
        retry_after_ms: float | None = None,
        detail: str | None = None,
    ) -> StreamAttemptError:
        """Classify a non-2xx response status."""
        if status in (401, 429) or 500 <= status < 600:
            return cls.retryable_http(status, retry_after_ms)
        message = detail or f"HTTP {status}"
        return cls.fatal(FatalClientError(message, status_code=status), status=status)

    @classmethod
    def from_exception(cls, exc: BaseException) -> StreamAttemptError:
        """Classify an exception raised while issuing the request."""
        if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
            return cls.retryable_transport(exc)
        text = f"{type(exc).__name__} {exc}".lower()
        if any(signature in text for signature in _TRANSPORT_SIGNATURES):
            return cls.retryable_transport(exc)
        return cls.fatal(exc)

    # -- queries -------------------------------------------------------

    def is_retryable(self) -> bool:
        return self.kind is not AttemptErrorKind.FATAL

    def delay(self, attempt: int, policy: RetryPolicy | None = None) -> float:
        """Backoff before retry number *attempt* (zero-based), in ms."""
        policy = policy or RetryPolicy()
        if self.kind is AttemptErrorKind.RETRYABLE_HTTP and self.retry_after_ms is not None:
            base = self.retry_after_ms
        else:
            base = min(
                policy.base_delay_ms * (policy.multiplier ** attempt),
                policy.max_delay_ms,
            )
        return base + random.uniform(0, base * policy.jitter)

    def into_error(self, provider: str | None = None) -> BaseException:
        """The error surfaced to the caller once retrying stops."""
        if self.kind is AttemptErrorKind.FATAL:
            if self.cause is not None:
                return self.cause
            return FatalClientError(str(self), status_code=self.status, provider=provider)

        if self.kind is AttemptErrorKind.RETRYABLE_TRANSPORT:
            return RetryableTransportError(f"Network error: {self.cause}", provider=provider)

        status = self.status
        if status == 429:
            if self.retry_after_ms is not None:
                message = f"Rate limit exceeded (retry after {self.retry_after_ms:.0f}ms)"
            else:
                message = "Rate limit exceeded"
        elif status == 401:
            message = "Authentication failed - check API key"
        else:
            message = f"Server error (HTTP {status})"
        return RetryableHttpError(
            message,
            status_code=status,
            provider=provider,
            retry_after_ms=self.retry_after_ms,
        )

    def __str__(self) -> str:
        if self.kind is AttemptErrorKind.RETRYABLE_HTTP:
            return f"Retryable HTTP error (status {self.status})"
        if self.kind is AttemptErrorKind.RETRYABLE_TRANSPORT:
            return f"Retryable transport error: {self.cause}"
        if isinstance(self.cause, ModelClientError):
            return f"Fatal error: {self.cause.message}"
        return f"Fatal error: {self.cause}"
