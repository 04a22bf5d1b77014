"""Incremental Server-Sent-Events frame decoder.

Splits a chunked HTTP body into ``data:`` frames.  Only the trailing
partial line and the data lines of the frame currently being assembled are
retained, so memory stays flat no matter how many frames pass through.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any

from responses_engine.errors import ProtocolDecodeError

_logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class SseFrame:
    """One complete ``data:`` frame."""

    index: int
    data: str

    def json(self) -> dict[str, Any]:
        """Parse the frame payload as a JSON object."""
        try:
            payload = json.loads(self.data)
        except json.JSONDecodeError as e:
            raise ProtocolDecodeError(
                f"Malformed JSON in SSE frame {self.index}: {e.msg}",
                frame_index=self.index,
                raw=self.data[:200],
            ) from e
        if not isinstance(payload, dict):
            raise ProtocolDecodeError(
                f"SSE frame {self.index} is not a JSON object",
                frame_index=self.index,
                raw=self.data[:200],
            )
        return payload


class SSEFrameDecoder:
    """Turn raw body chunks into :class:`SseFrame` objects.

    Usage::

        decoder = SSEFrameDecoder()
        async for chunk in response.aiter_bytes():
            for frame in decoder.feed(chunk):
                ...
            if decoder.done:
                break
        for frame in decoder.flush():
            ...
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending: list[str] = []
        self._data_lines: list[str] = []
        self._frame_count = 0
        self._done = False

    @property
    def done(self) -> bool:
        """True once ``data: [DONE]`` has been seen."""
        return self._done

    @property
    def frame_count(self) -> int:
        """Number of frames emitted so far."""
        return self._frame_count

    def feed(self, chunk: bytes | str) -> list[SseFrame]:
        """Consume *chunk* and return every frame it completed."""
        if self._done:
            return []
        if isinstance(chunk, bytes):
            text = self._utf8.decode(chunk)
        else:
            text = chunk
        if not text:
            return []

        if "\n" not in text:
            self._pending.append(text)
            return []
        lines = text.split("\n")
        self._pending.append(lines[0])
        lines[0] = "".join(self._pending)
        self._pending = [lines.pop()]

        frames: list[SseFrame] = []
        for line in lines:
            frame = self._process_line(line.removesuffix("\r"))
            if frame is not None:
                frames.append(frame)
            if self._done:
                self._pending = []
                break
        return frames

    def flush(self) -> list[SseFrame]:
        """Finish decoding at end of body.

        A frame whose terminating blank line never arrived is still emitted.
        """
        if self._done:
            return []
        frames: list[SseFrame] = []
        tail = "".join(self._pending) + self._utf8.decode(b"", final=True)
        self._pending = []
        if tail:
            frame = self._process_line(tail.removesuffix("\r"))
            if frame is not None:
                frames.append(frame)
        if not self._done:
            frame = self._dispatch()
            if frame is not None:
                frames.append(frame)
        return frames

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _process_line(self, line: str) -> SseFrame | None:
        if line == "":
            return self._dispatch()
        if not line.startswith("data:"):
            # event:, id:, retry: and ":" comments carry nothing we use
            return None
        value = line[5:]
        if value.startswith(" "):
            value = value[1:]
        if value.strip() == DONE_SENTINEL and not self._data_lines:
            _logger.debug("SSE stream finished after %d frames", self._frame_count)
            self._done = True
            return None
        self._data_lines.append(value)
        return None

    def _dispatch(self) -> SseFrame | None:
        if not self._data_lines:
            return None
        data = "\n".join(self._data_lines)
        self._data_lines = []
        frame = SseFrame(index=self._frame_count, data=data)
        self._frame_count += 1
        return frame
