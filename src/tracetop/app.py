"""tracetop - Textual trace screen."""

import logging
from bisect import bisect_right

from rich.text import Text
from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.screen import Screen
from textual.widgets import Footer, Input, OptionList, Static

from tracetop.controller import KEYMAP, KeyAction, KeyOutcome, TraceController
from tracetop.display import line_matches
from tracetop.models import TargetProcess, TraceConfig
from tracetop.tracer import ChildProcessController, describe_process

logger = logging.getLogger(__name__)


class TraceView(OptionList):
    """
    Scrollable list of trace lines, driven by the display sink.

    Every line is kept; the filter only decides which of them are shown as
    options. Selections coming from the sink use buffer indices and are
    mapped onto the nearest shown line.
    """

    DEFAULT_CSS = """
    TraceView {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize TraceView."""
        super().__init__(*args, **kwargs)
        self._texts: list[str] = []
        self._visible: list[int] = []  # Buffer index of each option
        self._filter = ""

    @property
    def item_count(self) -> int:
        """Number of lines shown."""
        return self.option_count

    @property
    def filter_text(self) -> str:
        return self._filter

    def line_index(self, option_index: int | None) -> int | None:
        """Buffer index of the line shown at ``option_index``."""
        if option_index is None or not 0 <= option_index < len(self._visible):
            return None
        return self._visible[option_index]

    def append_line(self, text: str) -> None:
        """Add a line; Text keeps tracer output like ``[pid 12]`` out of markup parsing."""
        self._texts.append(text)
        if line_matches(text, self._filter):
            self._visible.append(len(self._texts) - 1)
            self.add_option(Text(text))

    def extend_last_line(self, text: str) -> None:
        """Concatenate text onto the last line, showing it once it matches the filter."""
        if not self._texts:
            self.append_line(text)
            return
        last = len(self._texts) - 1
        self._texts[last] += text
        # Added text can turn a hidden line into a match, never the reverse
        if self._visible and self._visible[-1] == last:
            self.replace_option_prompt_at_index(len(self._visible) - 1, Text(self._texts[last]))
        elif line_matches(self._texts[last], self._filter):
            self._visible.append(last)
            self.add_option(Text(self._texts[last]))

    def set_selected(self, index: int) -> None:
        """Highlight a line, or the closest shown line above it, and scroll it into view."""
        position = bisect_right(self._visible, index) - 1
        if position >= 0:
            self.highlighted = position
        elif self._visible:
            self.highlighted = 0

    def set_filter(self, text: str) -> None:
        """Rebuild the options from every line containing ``text``."""
        self._filter = text
        self._visible = [i for i, line in enumerate(self._texts) if line_matches(line, text)]
        self.clear_options()
        self.add_options([Text(self._texts[i]) for i in self._visible])


class TracePrompt(Input):
    """One-line input for search and filter text, hidden until asked for."""

    DEFAULT_CSS = """
    TracePrompt {
        display: none;
    }
    """

    BINDINGS = [
        Binding("escape", "screen.cancel_prompt", "Cancel", show=False),
    ]

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.purpose = KeyAction.SEARCH


class TraceStatus(Static):
    """Title and state line above the trace."""

    DEFAULT_CSS = """
    TraceStatus {
        height: auto;
        padding: 0 1;
        background: $surface;
    }
    """

    status_text = ""  # Last rendered status without styling

    def show(self, target: TargetProcess, controller: TraceController) -> None:
        """Render the title and the current toggles."""
        command = target.command_line or target.name or "?"
        status = Text(f"Trace of process {target.pid} - {command}\n", style="bold")

        if controller.unavailable_reason is not None:
            status.append("tracing unavailable", style="red")
        elif controller.state.capturing_enabled:
            status.append("capturing", style="green")
        else:
            status.append("paused", style="yellow")

        status.append("  follow: ")
        status.append("on" if controller.state.auto_follow else "off")
        if controller.state.filter_text:
            status.append(f"  filter: {controller.state.filter_text}", style="cyan")

        if controller.unavailable_reason is None and not controller.tracer_alive:
            exit_code = controller.session.exit_code if controller.session else None
            status.append(f"  tracer exited (code={exit_code})", style="dim")

        status.append(f"  F9: {controller.capture_label}", style="dim")
        self.status_text = status.plain
        self.update(status)


class TraceScreen(Screen[None]):
    """Live trace of one process."""

    BINDINGS = [
        Binding("f3,slash", "search", "Search", key_display="F3"),
        Binding("f4,backslash", "filter", "Filter", key_display="F4"),
        Binding("f8,f", "toggle_follow", "AutoScroll", key_display="F8"),
        Binding("f9,t", "toggle_capture", "Stop/Resume Tracing", key_display="F9"),
        Binding("escape,q,f10", "close", "Done", key_display="Esc"),
    ]

    def __init__(
        self,
        target: TargetProcess,
        config: TraceConfig | None = None,
        tracer: ChildProcessController | None = None,
        follow: bool = False,
        capture: bool = True,
    ) -> None:
        """Initialize the TraceScreen."""
        super().__init__()
        self._target = target
        self._config = config or TraceConfig()
        self._controller = TraceController(target.pid, self._config, tracer=tracer)
        self._controller.state.auto_follow = follow
        self._controller.state.capturing_enabled = capture

    @property
    def controller(self) -> TraceController:
        """The state machine behind this screen."""
        return self._controller

    def compose(self) -> ComposeResult:
        """Compose the trace screen layout."""
        yield TraceStatus(id="trace-status")
        yield TraceView(id="trace-view")
        yield TracePrompt(id="trace-prompt")
        yield Footer()

    def on_mount(self) -> None:
        """Attach the view, start the tracer and begin polling its output."""
        self._controller.sink.attach_view(self.query_one("#trace-view", TraceView))
        self._controller.open()
        self._refresh_status()
        self.set_interval(self._config.refresh_interval, self._pump)

    def on_unmount(self) -> None:
        """Make sure the tracer never outlives the screen."""
        self._controller.close()

    def on_key(self, event: events.Key) -> None:
        """Any key that is not a toggle is navigation and releases auto-follow."""
        if self.query_one("#trace-prompt", TracePrompt).has_focus:
            return
        if event.key not in KEYMAP:
            self._apply(self._controller.handle_key(event.key))

    def on_option_list_option_highlighted(self, event: OptionList.OptionHighlighted) -> None:
        """Keep the sink's selection in step with the widget's cursor."""
        view = self.query_one("#trace-view", TraceView)
        self._controller.sink.note_selected(view.line_index(event.option_index))

    def on_input_submitted(self, event: Input.Submitted) -> None:
        """Run the search or apply the filter typed into the prompt."""
        prompt = self.query_one("#trace-prompt", TracePrompt)
        if prompt.purpose is KeyAction.FILTER:
            self._apply_filter(event.value)
        elif event.value and self._controller.search(event.value) is None:
            self.notify(f"No line contains {event.value!r}", severity="warning")
        self.action_cancel_prompt()
        self._refresh_status()

    def action_search(self) -> None:
        """Ask for text and jump to the next line containing it."""
        self._open_prompt(KeyAction.SEARCH, "Search", self._controller.search_text)

    def action_filter(self) -> None:
        """Ask for text and show only lines containing it."""
        self._open_prompt(KeyAction.FILTER, "Filter", self._controller.state.filter_text)

    def action_cancel_prompt(self) -> None:
        """Hide the prompt and give the keyboard back to the list."""
        self.query_one("#trace-prompt", TracePrompt).display = False
        self.query_one("#trace-view", TraceView).focus()

    def action_toggle_follow(self) -> None:
        """Toggle auto-follow."""
        self._apply(self._controller.handle_key("f8"))

    def action_toggle_capture(self) -> None:
        """Pause or resume capturing tracer output."""
        self._apply(self._controller.handle_key("f9"))

    def action_close(self) -> None:
        """Stop tracing and leave the screen."""
        self._controller.handle_key("escape")
        self.dismiss(None)

    def _apply(self, outcome: KeyOutcome) -> None:
        if outcome.redraw:
            self._refresh_status()

    def _open_prompt(self, purpose: KeyAction, placeholder: str, value: str) -> None:
        prompt = self.query_one("#trace-prompt", TracePrompt)
        prompt.purpose = purpose
        prompt.placeholder = placeholder
        prompt.value = value
        prompt.display = True
        prompt.focus()

    def _apply_filter(self, text: str) -> None:
        self._controller.set_filter(text)
        view = self.query_one("#trace-view", TraceView)
        view.set_filter(text)
        sink = self._controller.sink
        if self._controller.state.auto_follow:
            sink.pin_to_newest()
        elif sink.selected is not None:
            view.set_selected(sink.selected)

    def _pump(self) -> None:
        """Drain pending tracer output into the view."""
        try:
            result = self._controller.pump()
        except Exception:
            # The trace screen must never take the monitor down with it
            logger.exception("Trace update failed for pid %d", self._target.pid)
            return

        if result.tracer_exited:
            self._refresh_status()

    def _refresh_status(self) -> None:
        try:
            self.query_one("#trace-status", TraceStatus).show(self._target, self._controller)
        except Exception:
            pass  # Widget not mounted yet


class TraceApp(App[None]):
    """Main tracetop application."""

    TITLE = "tracetop"
    SUB_TITLE = "System Call Trace Viewer"

    def __init__(
        self,
        pid: int,
        config: TraceConfig | None = None,
        tracer: ChildProcessController | None = None,
        follow: bool = False,
        capture: bool = True,
    ) -> None:
        """Initialize the TraceApp."""
        super().__init__()
        self._target = describe_process(pid)
        self._config = config
        self._tracer = tracer
        self._follow = follow
        self._capture = capture
        self._trace_screen: TraceScreen | None = None

    @property
    def target(self) -> TargetProcess:
        """The process being traced."""
        return self._target

    @property
    def trace_screen(self) -> TraceScreen | None:
        """The trace screen, once mounted."""
        return self._trace_screen

    def on_mount(self) -> None:
        """Show the trace screen; the app ends when it is closed."""
        self._trace_screen = TraceScreen(
            self._target,
            self._config,
            tracer=self._tracer,
            follow=self._follow,
            capture=self._capture,
        )
        self.push_screen(self._trace_screen, callback=self._on_trace_closed)

    def on_unmount(self) -> None:
        """Reap the tracer however the app ends."""
        if self._trace_screen is not None:
            self._trace_screen.controller.close()

    def _on_trace_closed(self, _result: None) -> None:
        self.exit()
