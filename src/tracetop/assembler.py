"""Reassembly of tracer output chunks into display lines."""

import codecs
from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class Segment:
    """One display operation produced from a chunk."""

    text: str
    extends_last: bool  # Concatenate onto the open display entry
    terminated: bool  # A newline closed the entry


@dataclass(slots=True, frozen=True)
class FeedResult:
    """Outcome of feeding one chunk to the assembler."""

    segments: tuple[Segment, ...]
    completed: tuple[str, ...]  # Full text of every line closed by this chunk
    continuation: bool  # An open entry is waiting for more text


class LineAssembler:
    """
    Turns arbitrarily fragmented byte chunks into lines.

    Text after the last newline is emitted right away as an open entry; the
    next chunk extends that entry until a newline closes it. Splitting the
    same byte string into different chunks always yields the same lines.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""
        self._continuation = False

    @property
    def pending(self) -> str:
        """Text of the open, not yet terminated line."""
        return self._pending

    @property
    def has_pending_continuation(self) -> bool:
        """Whether the last emitted entry is open and must be extended."""
        return self._continuation

    def feed(self, data: bytes) -> FeedResult:
        """Consume one chunk and return the display operations it implies."""
        return self._emit(self._decoder.decode(data))

    def flush(self) -> FeedResult:
        """Emit a character left incomplete at the end of the stream as U+FFFD."""
        return self._emit(self._decoder.decode(b"", final=True))

    def _emit(self, text: str) -> FeedResult:
        segments: list[Segment] = []
        completed: list[str] = []

        *terminated, tail = text.split("\n")
        for piece in terminated:
            segments.append(Segment(piece, extends_last=self._continuation, terminated=True))
            completed.append(self._pending + piece)
            self._pending = ""
            self._continuation = False

        if tail:
            segments.append(Segment(tail, extends_last=self._continuation, terminated=False))
            self._pending += tail
            self._continuation = True

        return FeedResult(tuple(segments), tuple(completed), self._continuation)

    def reset(self) -> None:
        """Forget the open line and any partially decoded character."""
        self._decoder.reset()
        self._pending = ""
        self._continuation = False
