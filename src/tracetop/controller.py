"""State machine behind the trace screen."""

import logging
from dataclasses import dataclass
from enum import Enum

from tracetop.assembler import LineAssembler
from tracetop.display import DisplaySink, LineView
from tracetop.errors import SpawnError
from tracetop.loop import EventLoop, KeySource, TickResult
from tracetop.models import ScreenState, TraceConfig, TraceSession
from tracetop.tracer import ChildProcessController

logger = logging.getLogger(__name__)


class KeyAction(Enum):
    """What a key press did to the screen."""

    TOGGLE_FOLLOW = "follow"
    TOGGLE_CAPTURE = "capture"
    SEARCH = "search"
    FILTER = "filter"
    CLOSE = "close"
    NAVIGATE = "navigate"


KEYMAP: dict[str, KeyAction] = {
    "f8": KeyAction.TOGGLE_FOLLOW,
    "f": KeyAction.TOGGLE_FOLLOW,
    "f9": KeyAction.TOGGLE_CAPTURE,
    "t": KeyAction.TOGGLE_CAPTURE,
    "f3": KeyAction.SEARCH,
    "slash": KeyAction.SEARCH,
    "f4": KeyAction.FILTER,
    "backslash": KeyAction.FILTER,
    "escape": KeyAction.CLOSE,
    "q": KeyAction.CLOSE,
    "f10": KeyAction.CLOSE,
}

STOP_LABEL = "Stop Tracing"
RESUME_LABEL = "Resume Tracing"


@dataclass(slots=True, frozen=True)
class KeyOutcome:
    """Result of routing one key press."""

    action: KeyAction
    redraw: bool

    @property
    def handled(self) -> bool:
        """False when the key should go on to the list widget."""
        return self.action is not KeyAction.NAVIGATE


class TraceController:
    """
    Glues tracer, assembler, sink and loop together and owns the toggles.

    States are the four combinations of capturing and following. Closing is
    the only way out and tears the tracer down exactly once.
    """

    def __init__(
        self,
        target_pid: int,
        config: TraceConfig | None = None,
        view: LineView | None = None,
        tracer: ChildProcessController | None = None,
        key_source: KeySource | None = None,
    ) -> None:
        self._target_pid = target_pid
        self._config = config or TraceConfig()
        self._state = ScreenState()
        self._sink = DisplaySink(self._state, view)
        self._assembler = LineAssembler()
        self._tracer = tracer or ChildProcessController(self._config)
        self._key_source = key_source
        self._session: TraceSession | None = None
        self._loop: EventLoop | None = None
        self._unavailable: str | None = None
        self._search_text = ""
        self._closed = False

    @property
    def target_pid(self) -> int:
        return self._target_pid

    @property
    def state(self) -> ScreenState:
        return self._state

    @property
    def sink(self) -> DisplaySink:
        return self._sink

    @property
    def session(self) -> TraceSession | None:
        return self._session

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def unavailable_reason(self) -> str | None:
        """Why tracing could not start, if it could not."""
        return self._unavailable

    @property
    def tracer_alive(self) -> bool:
        """Whether tracer output is still being read."""
        return self._loop is not None and self._loop.stream_live

    @property
    def capture_label(self) -> str:
        """Hint label for the capture toggle."""
        return STOP_LABEL if self._state.capturing_enabled else RESUME_LABEL

    @property
    def search_text(self) -> str:
        """The last text searched for."""
        return self._search_text

    def search(self, needle: str) -> int | None:
        """
        Select the next line containing ``needle``, case-insensitively.

        The search starts after the current selection, wraps around and skips
        lines hidden by the filter. Finding a match releases auto-follow so
        the next append does not move the selection away from it.

        Returns:
            The index of the selected line, or None when nothing matched.
        """
        self._search_text = needle
        selected = self._sink.selected
        start = 0 if selected is None else selected + 1
        index = self._sink.find(needle, start, within=self._state.filter_text)
        if index is None:
            return None
        self._state.auto_follow = False
        self._sink.select(index)
        return index

    def set_filter(self, text: str) -> None:
        """Show only lines containing ``text``; empty shows everything."""
        self._state.filter_text = text
        logger.debug("Filter for pid %d set to %r", self._target_pid, text)

    def open(self) -> None:
        """Start the tracer; on failure show a permanent notice instead."""
        if self._loop is not None:
            return
        try:
            self._session = self._tracer.start(self._target_pid)
        except SpawnError as e:
            logger.warning("Tracing pid %d unavailable: %s", self._target_pid, e)
            self._unavailable = str(e)
            self._sink.append_line(f"Tracing unavailable: {e}")

        self._loop = EventLoop(
            self._tracer,
            self._session,
            self._assembler,
            self._sink,
            self._state,
            self._config,
            key_source=self._key_source,
            on_key=self._dispatch_key,
        )

    def handle_key(self, key: str) -> KeyOutcome:
        """Route a key press; see :data:`KEYMAP` for the handled keys."""
        action = KEYMAP.get(key, KeyAction.NAVIGATE)

        if action is KeyAction.TOGGLE_FOLLOW:
            self._state.auto_follow = not self._state.auto_follow
            if self._state.auto_follow:
                self._sink.pin_to_newest()
            return KeyOutcome(action, redraw=True)

        if action is KeyAction.TOGGLE_CAPTURE:
            self._state.capturing_enabled = not self._state.capturing_enabled
            if not self._state.capturing_enabled:
                # Output after a resume must not extend a line whose tail was dropped
                self._assembler.reset()
            logger.info(
                "Capture %s for pid %d",
                "resumed" if self._state.capturing_enabled else "paused",
                self._target_pid,
            )
            return KeyOutcome(action, redraw=True)

        if action is KeyAction.CLOSE:
            self.close()
            return KeyOutcome(action, redraw=False)

        if action in (KeyAction.SEARCH, KeyAction.FILTER):
            # The prompt for the text belongs to the UI
            return KeyOutcome(action, redraw=False)

        # Manual navigation releases the pin
        was_following = self._state.auto_follow
        self._state.auto_follow = False
        return KeyOutcome(action, redraw=was_following)

    def tick(self) -> TickResult:
        """Run one loop tick."""
        if self._closed:
            return TickResult()
        if self._loop is None:
            self.open()
        return self._loop.tick()

    def pump(self) -> TickResult:
        """Tick until the tracer has nothing more to say right now."""
        if self._closed:
            return TickResult()
        if self._loop is None:
            self.open()
        return self._loop.run_pending()

    def run(self) -> None:
        """Drive the loop until a close key arrives from the key source."""
        if self._key_source is None:
            raise ValueError("run() needs a key source to receive the close key")
        while not self._closed:
            self.tick()

    def close(self) -> None:
        """Tear everything down. Only the first call has an effect."""
        if self._closed:
            return
        self._closed = True
        if self._loop is not None:
            self._loop.close()
        elif self._session is not None:
            self._tracer.shutdown(self._session)
        logger.info("Trace of pid %d closed", self._target_pid)

    def _dispatch_key(self, key: str) -> bool:
        return self.handle_key(key).redraw
