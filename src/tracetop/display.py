"""Append-only line buffer backing the trace view."""

from collections.abc import Iterable
from typing import Protocol

from tracetop.assembler import Segment
from tracetop.models import ScreenState


def line_matches(line: str, needle: str) -> bool:
    """Case-insensitive substring test; an empty needle matches every line."""
    return needle.casefold() in line.casefold()


class LineView(Protocol):
    """A scrollable list widget that mirrors the buffer."""

    def append_line(self, text: str) -> None: ...

    def extend_last_line(self, text: str) -> None: ...

    def set_selected(self, index: int) -> None: ...

    @property
    def item_count(self) -> int: ...


class DisplaySink:
    """
    Ordered, append-only sequence of trace lines.

    Lines are only ever appended or have text added to the last one. When
    ``state.auto_follow`` is set, every mutation moves the selection to the
    newest line.
    """

    def __init__(self, state: ScreenState, view: LineView | None = None) -> None:
        self._state = state
        self._view = view
        self._lines: list[str] = []
        self._selected: int | None = None

    def __len__(self) -> int:
        return len(self._lines)

    @property
    def lines(self) -> list[str]:
        """A copy of the buffered lines, oldest first."""
        return list(self._lines)

    @property
    def selected(self) -> int | None:
        """Index of the selected line, or None before anything was selected."""
        return self._selected

    def attach_view(self, view: LineView) -> None:
        """Mirror onto ``view``, replaying whatever is already buffered."""
        self._view = view
        for line in self._lines:
            view.append_line(line)
        if self._selected is not None:
            view.set_selected(self._selected)

    def append_line(self, text: str) -> None:
        """Add a new entry."""
        self._lines.append(text)
        if self._view is not None:
            self._view.append_line(text)
        self._follow()

    def extend_last_line(self, text: str) -> None:
        """Concatenate ``text`` onto the newest entry (or start one if empty)."""
        if not self._lines:
            self.append_line(text)
            return
        self._lines[-1] += text
        if self._view is not None:
            self._view.extend_last_line(text)
        self._follow()

    def apply(self, segments: Iterable[Segment]) -> None:
        """Apply assembler output in order."""
        for segment in segments:
            if segment.extends_last:
                self.extend_last_line(segment.text)
            else:
                self.append_line(segment.text)

    def select(self, index: int) -> None:
        """Move the selection, clamped to the buffer."""
        if not self._lines:
            return
        self._selected = min(max(0, index), len(self._lines) - 1)
        if self._view is not None:
            self._view.set_selected(self._selected)

    def pin_to_newest(self) -> None:
        """Select the most recent line."""
        self.select(len(self._lines) - 1)

    def find(self, needle: str, start: int = 0, within: str = "") -> int | None:
        """
        Index of the first line at or after ``start`` containing ``needle``.

        Wraps around to the top. Lines not containing ``within`` are skipped.
        """
        if not needle or not self._lines:
            return None
        count = len(self._lines)
        for offset in range(count):
            index = (start + offset) % count
            line = self._lines[index]
            if line_matches(line, within) and line_matches(line, needle):
                return index
        return None

    def note_selected(self, index: int | None) -> None:
        """Record a selection change made by the view itself."""
        self._selected = index

    def _follow(self) -> None:
        if self._state.auto_follow:
            self.pin_to_newest()
