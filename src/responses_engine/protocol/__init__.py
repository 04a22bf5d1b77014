"""Wire protocol: SSE frame decoding and event translation."""

from responses_engine.protocol.sse import SSEFrameDecoder, SseFrame
from responses_engine.protocol.translator import EventTranslator, TranslatorMetrics

__all__ = [
    "EventTranslator",
    "SSEFrameDecoder",
    "SseFrame",
    "TranslatorMetrics",
]
