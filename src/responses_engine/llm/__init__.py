"""Responses API client, request payloads and retry classification."""

from responses_engine.llm.retry import (
    AttemptErrorKind,
    RetryPolicy,
    StreamAttemptError,
    parse_retry_after,
)

__all__ = [
    "AttemptErrorKind",
    "RetryPolicy",
    "StreamAttemptError",
    "parse_retry_after",
]
