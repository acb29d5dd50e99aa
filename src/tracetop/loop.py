"""Tick loop multiplexing keyboard input and tracer output."""

import logging
import selectors
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Protocol

from tracetop.assembler import FeedResult, LineAssembler
from tracetop.display import DisplaySink
from tracetop.errors import StreamReadError
from tracetop.models import ScreenState, TraceConfig, TraceSession
from tracetop.tracer import ChildProcessController

logger = logging.getLogger(__name__)

_STREAM = "stream"
_KEYS = "keys"

# Upper bound on reads when draining a pipe whose writer has exited
_DRAIN_LIMIT = 1024


class KeySource(Protocol):
    """Selectable source of key presses."""

    def fileno(self) -> int: ...

    def read_keys(self) -> Iterable[str]: ...


@dataclass(slots=True)
class TickResult:
    """What happened during one or more ticks."""

    keys: list[str] = field(default_factory=list)
    redraw: bool = False
    bytes_read: int = 0
    bytes_discarded: int = 0
    lines_completed: int = 0
    tracer_exited: bool = False

    def merge(self, other: "TickResult") -> None:
        """Fold ``other`` into this result."""
        self.keys.extend(other.keys)
        self.redraw = self.redraw or other.redraw
        self.bytes_read += other.bytes_read
        self.bytes_discarded += other.bytes_discarded
        self.lines_completed += other.lines_completed
        self.tracer_exited = self.tracer_exited or other.tracer_exited


class EventLoop:
    """
    Cooperative, single-threaded loop over the tracer stream and a key source.

    Each tick waits at most ``config.poll_timeout`` for either source. Bytes
    read while capturing go through the assembler into the sink; bytes read
    while paused are drained and dropped so the tracer never blocks on a full
    pipe. A tick either reads or checks for tracer exit, never both.
    """

    def __init__(
        self,
        tracer: ChildProcessController,
        session: TraceSession | None,
        assembler: LineAssembler,
        sink: DisplaySink,
        state: ScreenState,
        config: TraceConfig | None = None,
        key_source: KeySource | None = None,
        on_key: Callable[[str], bool] | None = None,
    ) -> None:
        """
        Initialize the EventLoop.

        Args:
            tracer: Controller owning the session's child process.
            session: The running session, or None when tracing is unavailable.
            assembler: Line reassembly state carried across reads.
            sink: Destination for assembled lines.
            state: Capture and follow toggles, read on every tick.
            config: Poll timeout and read size.
            key_source: Optional selectable key source.
            on_key: Called with each key; returns whether a redraw is needed.
        """
        self._tracer = tracer
        self._session = session
        self._assembler = assembler
        self._sink = sink
        self._state = state
        self._config = config or TraceConfig()
        self._key_source = key_source
        self.on_key = on_key
        self._selector = selectors.DefaultSelector()
        self._stream_live = False
        self._closed = False

        if session is not None and session.stream is not None:
            self._selector.register(session.stream, selectors.EVENT_READ, _STREAM)
            self._stream_live = True
        if key_source is not None:
            self._selector.register(key_source, selectors.EVENT_READ, _KEYS)

    @property
    def stream_live(self) -> bool:
        """Whether the tracer stream is still being read."""
        return self._stream_live

    @property
    def closed(self) -> bool:
        """Whether :meth:`close` has run."""
        return self._closed

    def tick(self, timeout: float | None = None) -> TickResult:
        """Wait for input once and dispatch whatever became ready."""
        result = TickResult()
        if self._closed:
            return result

        timeout = self._config.poll_timeout if timeout is None else timeout
        ready = {key.data for key, _ in self._selector.select(timeout)}

        if _KEYS in ready and self._key_source is not None:
            for key in self._key_source.read_keys():
                result.keys.append(key)
                if self.on_key is not None and self.on_key(key):
                    result.redraw = True
                if self._closed:
                    return result

        data = self._read() if _STREAM in ready and self._stream_live else b""
        if data:
            self._consume(data, result)
        elif self._stream_live and self._tracer.poll_exited(self._session):
            self._drain(result)
            self._stop_reading()
            result.tracer_exited = True
            result.redraw = True

        return result

    def run_pending(self, max_ticks: int | None = None) -> TickResult:
        """Tick repeatedly while tracer output keeps arriving."""
        total = TickResult()
        for _ in range(max_ticks or self._config.max_ticks_per_refresh):
            result = self.tick()
            total.merge(result)
            if not result.bytes_read or self._closed:
                break
        return total

    def close(self) -> None:
        """Stop reading, then signal, reap and close the tracer. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._stop_reading()
        if self._session is not None:
            self._tracer.shutdown(self._session)
        self._selector.close()

    def _read(self) -> bytes:
        try:
            return self._tracer.read(self._session, self._config.chunk_size)
        except StreamReadError as e:
            logger.debug("Treating failed read as empty: %s", e)
            return b""

    def _consume(self, data: bytes, result: TickResult) -> None:
        result.bytes_read += len(data)
        if not self._state.capturing_enabled:
            result.bytes_discarded += len(data)
            return

        self._apply(self._assembler.feed(data), result)

    def _apply(self, fed: FeedResult, result: TickResult) -> None:
        self._sink.apply(fed.segments)
        result.lines_completed += len(fed.completed)
        if fed.segments:
            result.redraw = True

    def _drain(self, result: TickResult) -> None:
        """Collect output still buffered in the pipe after the tracer exited."""
        for _ in range(_DRAIN_LIMIT):
            data = self._read()
            if not data:
                break
            self._consume(data, result)
        if self._state.capturing_enabled:
            self._apply(self._assembler.flush(), result)

    def _stop_reading(self) -> None:
        if not self._stream_live:
            return
        self._stream_live = False
        self._selector.unregister(self._session.stream)
