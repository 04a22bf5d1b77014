"""Single-consumer async stream of ``ResponseEvent`` objects.

The producer (the client's read loop) pushes events with ``add_event()``
and finishes with ``complete()`` / ``error()``; the consumer iterates with
``async for``.  A bounded buffer applies backpressure to the producer, an
idle timeout bounds every wait, and an :class:`AbortSignal` cancels both
sides.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Callable, Iterable

from responses_engine.errors import StreamAbortedError, StreamTimeoutError
from responses_engine.types import ResponseEvent

_logger = logging.getLogger(__name__)


@dataclass
class StreamConfig:
    """Buffering and timeout behaviour of a ``ResponseStream``."""

    max_buffer_size: int = 1000
    event_timeout_ms: int = 30_000
    enable_backpressure: bool = True


class StreamState(enum.Enum):
    OPEN = "open"
    COMPLETED = "completed"
    ERRORED = "errored"
    ABORTED = "aborted"


class AbortSignal:
    """Cancellation handle shared between a caller and the streams it owns.

    Listeners run synchronously inside ``abort()``; a listener added after
    the abort runs immediately.
    """

    def __init__(self) -> None:
        self._aborted = False
        self._listeners: list[Callable[[], Any]] = []

    @property
    def aborted(self) -> bool:
        return self._aborted

    def abort(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception:
                _logger.exception("Abort listener %r raised", listener)

    def add_listener(self, listener: Callable[[], Any]) -> None:
        if self._aborted:
            listener()
            return
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[], Any]) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass


class ResponseStream:
    """Cancellable, timeout-bounded async iterator over ``ResponseEvent``.

    Parameters
    ----------
    config:
        Buffer size, idle timeout and backpressure settings.
    abort_signal:
        Optional external signal; aborting it aborts this stream.
    """

    def __init__(
        self,
        config: StreamConfig | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> None:
        self._config = config or StreamConfig()
        self._buffer: deque[ResponseEvent] = deque()
        self._state = StreamState.OPEN
        self._error: BaseException | None = None
        self._terminal_delivered = False
        self._consumer_waiting = False
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()
        self._writable.set()

        # Internal signal: stream.abort() and the external signal both land here
        self.signal = AbortSignal()
        self.signal.add_listener(self._on_abort)
        self._abort_signal = abort_signal
        if abort_signal is not None:
            abort_signal.add_listener(self.signal.abort)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def config(self) -> StreamConfig:
        return self._config

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    @property
    def is_closed(self) -> bool:
        """True once the stream reached any terminal state."""
        return self._state is not StreamState.OPEN

    @property
    def is_completed(self) -> bool:
        return self._state is StreamState.COMPLETED

    @property
    def is_aborted(self) -> bool:
        return self._state is StreamState.ABORTED

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    async def add_event(self, event: ResponseEvent) -> None:
        """Append *event*, waiting for room when the buffer is full.

        A no-op once the stream is terminal.
        """
        while (
            self._state is StreamState.OPEN
            and self._config.enable_backpressure
            and len(self._buffer) >= self._config.max_buffer_size
        ):
            self._writable.clear()
            await self._writable.wait()

        if self._state is not StreamState.OPEN:
            _logger.debug("Dropping %s: stream is %s", type(event).__name__, self._state.value)
            return

        self._buffer.append(event)
        self._readable.set()

    async def add_events(self, events: Iterable[ResponseEvent]) -> None:
        for event in events:
            await self.add_event(event)

    def complete(self) -> None:
        """Mark the stream finished; buffered events are still delivered."""
        self._finish(StreamState.COMPLETED)

    def error(self, exc: BaseException) -> None:
        """Fail the stream; the consumer sees *exc* after buffered events."""
        if self._finish(StreamState.ERRORED):
            self._error = exc

    def abort(self) -> None:
        """Cancel the stream; buffered events are discarded."""
        self.signal.abort()

    # ------------------------------------------------------------------
    # Consumer API
    # ------------------------------------------------------------------

    def __aiter__(self) -> ResponseStream:
        return self

    async def __anext__(self) -> ResponseEvent:
        if self._consumer_waiting:
            raise RuntimeError("ResponseStream supports a single consumer")
        self._consumer_waiting = True
        try:
            return await self._next_event()
        finally:
            self._consumer_waiting = False

    async def next(self) -> ResponseEvent | None:
        """Return the next event, or ``None`` once the stream is exhausted."""
        try:
            return await self.__anext__()
        except StopAsyncIteration:
            return None

    async def to_list(self) -> list[ResponseEvent]:
        """Collect every remaining event (waits for completion)."""
        return [event async for event in self]

    async def take(self, count: int) -> AsyncGenerator[ResponseEvent, None]:
        """Yield at most *count* events."""
        if count <= 0:
            return
        taken = 0
        async for event in self:
            yield event
            taken += 1
            if taken >= count:
                return

    async def filter(
        self, predicate: Callable[[ResponseEvent], bool],
    ) -> AsyncGenerator[ResponseEvent, None]:
        async for event in self:
            if predicate(event):
                yield event

    async def map(
        self, mapper: Callable[[ResponseEvent], Any],
    ) -> AsyncGenerator[Any, None]:
        async for event in self:
            yield mapper(event)

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def from_events(
        cls,
        events: Iterable[ResponseEvent],
        config: StreamConfig | None = None,
    ) -> ResponseStream:
        """Build an already-completed stream holding *events*."""
        stream = cls(config)
        stream._buffer.extend(events)
        if stream._buffer:
            stream._readable.set()
        stream.complete()
        return stream

    @classmethod
    def from_error(cls, exc: BaseException) -> ResponseStream:
        """Build a stream whose first read raises *exc*."""
        stream = cls()
        stream.error(exc)
        return stream

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _next_event(self) -> ResponseEvent:
        timeout_ms = self._config.event_timeout_ms
        while True:
            if self._buffer:
                event = self._buffer.popleft()
                if len(self._buffer) < self._config.max_buffer_size:
                    self._writable.set()
                return event

            if self._state is not StreamState.OPEN:
                return self._deliver_terminal()

            self._readable.clear()
            try:
                await asyncio.wait_for(self._readable.wait(), timeout=timeout_ms / 1000)
            except asyncio.TimeoutError:
                if self._state is not StreamState.OPEN or self._buffer:
                    continue
                exc = StreamTimeoutError(timeout_ms)
                _logger.warning("Response stream idle for %sms, giving up", timeout_ms)
                self.error(exc)
                self._terminal_delivered = True
                raise exc from None

    def _deliver_terminal(self) -> ResponseEvent:
        if self._terminal_delivered:
            raise StopAsyncIteration
        self._terminal_delivered = True
        if self._state is StreamState.ABORTED:
            raise StreamAbortedError()
        if self._state is StreamState.ERRORED and self._error is not None:
            raise self._error
        raise StopAsyncIteration

    def _finish(self, state: StreamState) -> bool:
        if self._state is not StreamState.OPEN:
            _logger.debug(
                "Ignoring %s: stream already %s", state.value, self._state.value,
            )
            return False
        self._state = state
        self._readable.set()
        self._writable.set()
        if self._abort_signal is not None:
            self._abort_signal.remove_listener(self.signal.abort)
        return True

    def _on_abort(self) -> None:
        if self._finish(StreamState.ABORTED):
            self._buffer.clear()
