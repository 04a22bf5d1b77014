"""Translate decoded Responses API frames into typed ``ResponseEvent`` objects."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from responses_engine.errors import ProtocolDecodeError, ResponseFailedError
from responses_engine.types import (
    Completed,
    Created,
    OutputItemDone,
    OutputTextDelta,
    ReasoningContentDelta,
    ReasoningSummaryDelta,
    ReasoningSummaryPartAdded,
    ResponseEvent,
    TokenUsage,
    WebSearchCallBegin,
)

from .sse import SseFrame

_logger = logging.getLogger(__name__)

# Per-frame processing target (milliseconds)
_TARGET_MS = 10.0

_IGNORED_TYPES = frozenset({
    "response.in_progress",
    "response.output_text.done",
    "response.content_part.done",
    "response.function_call_arguments.delta",
    "response.custom_tool_call_input.delta",
    "response.custom_tool_call_input.done",
    "response.reasoning_summary_text.done",
})

_RETRY_AFTER_RE = re.compile(r"Please try again in (\d+(?:\.\d+)?)(s|ms)")


def parse_retry_after_hint(error: dict[str, Any]) -> float | None:
    """Extract a retry delay (ms) from a ``rate_limit_exceeded`` error body."""
    message = error.get("message")
    if error.get("code") != "rate_limit_exceeded" or not message:
        return None
    m = _RETRY_AFTER_RE.search(message)
    if not m:
        return None
    value = float(m.group(1))
    if m.group(2) == "s":
        return value * 1000
    return value


def _object_field(payload: dict[str, Any], key: str, kind: str) -> dict[str, Any] | None:
    value = payload.get(key)
    if value is None or isinstance(value, dict):
        return value
    raise ProtocolDecodeError(f"{kind} field '{key}' is not an object")


@dataclass
class TranslatorMetrics:
    """Running per-frame processing statistics."""

    total_processed: int = 0
    total_ms: float = 0.0

    @property
    def average_ms(self) -> float:
        if self.total_processed == 0:
            return 0.0
        return self.total_ms / self.total_processed

    @property
    def is_within_target(self) -> bool:
        return self.average_ms < _TARGET_MS


class EventTranslator:
    """Map each frame's ``type`` to zero or one ``ResponseEvent``.

    ``response.failed`` raises :class:`ResponseFailedError` and poisons the
    translator: later frames of the same attempt translate to nothing.
    """

    def __init__(self) -> None:
        self.metrics = TranslatorMetrics()
        self._failed = False

    @property
    def failed(self) -> bool:
        return self._failed

    def translate_frame(self, frame: SseFrame) -> list[ResponseEvent]:
        """Decode *frame* as JSON and translate it."""
        if self._failed:
            return []
        try:
            return self.translate(frame.json())
        except ProtocolDecodeError as e:
            if e.frame_index is None:
                e.frame_index = frame.index
            raise

    def translate(self, payload: dict[str, Any]) -> list[ResponseEvent]:
        """Translate one decoded frame payload."""
        if self._failed:
            return []
        start = time.perf_counter()
        try:
            return self._translate(payload)
        finally:
            elapsed = (time.perf_counter() - start) * 1000
            self.metrics.total_processed += 1
            self.metrics.total_ms += elapsed
            if elapsed > _TARGET_MS:
                _logger.warning(
                    "SSE frame processing took %.2fms (> %.0fms target)",
                    elapsed, _TARGET_MS,
                )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _translate(self, payload: dict[str, Any]) -> list[ResponseEvent]:
        kind = payload.get("type") or ""

        if kind in _IGNORED_TYPES:
            return []

        if kind == "response.created":
            if payload.get("response") is not None:
                return [Created()]
            return []

        if kind == "response.output_item.done":
            item = _object_field(payload, "item", kind)
            if item:
                return [OutputItemDone(item=item)]
            return []

        if kind == "response.output_item.added":
            item = _object_field(payload, "item", kind) or {}
            if item.get("type") == "web_search_call":
                return [WebSearchCallBegin(call_id=item.get("id") or "")]
            return []

        if kind == "response.output_text.delta":
            delta = payload.get("delta")
            return [OutputTextDelta(delta=delta)] if delta else []

        if kind == "response.reasoning_summary_text.delta":
            delta = payload.get("delta")
            return [ReasoningSummaryDelta(delta=delta)] if delta else []

        if kind == "response.reasoning_text.delta":
            delta = payload.get("delta")
            return [ReasoningContentDelta(delta=delta)] if delta else []

        if kind == "response.reasoning_summary_part.added":
            return [ReasoningSummaryPartAdded()]

        if kind == "response.completed":
            return self._completed(_object_field(payload, "response", kind))

        if kind == "response.failed":
            self._failed = True
            raise self._failure(payload, _object_field(payload, "response", kind) or {})

        _logger.debug("Unknown SSE event type: %s", kind)
        return []

    @staticmethod
    def _completed(response: dict[str, Any] | None) -> list[ResponseEvent]:
        if response is None:
            return []
        usage = response.get("usage")
        token_usage: TokenUsage | None = None
        if usage:
            if not isinstance(usage, dict):
                raise ProtocolDecodeError("response.completed usage is not an object")
            try:
                token_usage = TokenUsage.from_api(usage)
            except ValidationError as e:
                raise ProtocolDecodeError(
                    f"Invalid usage block in response.completed: {e}",
                ) from e
        return [Completed(response_id=response.get("id") or "", token_usage=token_usage)]

    @staticmethod
    def _failure(payload: dict[str, Any], response: dict[str, Any]) -> ResponseFailedError:
        error = response.get("error") or payload.get("error") or {}
        if not isinstance(error, dict):
            error = {"message": str(error)}
        message = error.get("message") or "Response failed"
        code = error.get("code")
        return ResponseFailedError(
            message,
            code=code,
            retry_after_ms=parse_retry_after_hint(error),
        )
