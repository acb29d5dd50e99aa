"""Tests for the TraceController state machine."""

import os
import time

import pytest

from tracetop.controller import (
    KEYMAP,
    RESUME_LABEL,
    STOP_LABEL,
    KeyAction,
    TraceController,
)
from tracetop.errors import UnsupportedPlatformError
from tracetop.models import TraceConfig
from tracetop.tracer import EXEC_FAILED_STATUS, ChildProcessController

CONFIG = TraceConfig(poll_timeout=0.005)


def make_controller(script: str | None = None, **kwargs) -> TraceController:
    """Controller whose 'tracer' is a shell script."""
    argv = ["sh", "-c", script] if script is not None else ["sh", "-c", "exec sleep 30"]
    tracer = ChildProcessController(CONFIG, command_builder=lambda pid: argv)
    return TraceController(99, CONFIG, tracer=tracer, **kwargs)


def run_until_exit(controller: TraceController, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while controller.tracer_alive:
        assert time.monotonic() < deadline, "tracer did not exit"
        controller.tick()


class UnsupportedTracer(ChildProcessController):
    def start(self, target_pid):
        raise UnsupportedPlatformError("plan9")


class PipeKeys:
    """Selectable key source fed by the test."""

    def __init__(self, *keys: str) -> None:
        self._read_fd, write_fd = os.pipe()
        os.write(write_fd, "".join(f"{key}\n" for key in keys).encode())
        os.close(write_fd)

    def fileno(self) -> int:
        return self._read_fd

    def read_keys(self) -> list[str]:
        return os.read(self._read_fd, 4096).decode().split()

    def close(self) -> None:
        os.close(self._read_fd)


class TestKeyHandling:
    """Tests for the capture/follow state machine."""

    def test_keymap(self):
        assert KEYMAP["f8"] is KEYMAP["f"] is KeyAction.TOGGLE_FOLLOW
        assert KEYMAP["f9"] is KEYMAP["t"] is KeyAction.TOGGLE_CAPTURE
        assert KEYMAP["escape"] is KeyAction.CLOSE

    def test_toggle_follow_pins_to_newest(self):
        controller = TraceController(1, CONFIG)
        for i in range(3):
            controller.sink.append_line(f"line {i}")
        controller.sink.select(0)

        outcome = controller.handle_key("f8")

        assert outcome.action is KeyAction.TOGGLE_FOLLOW
        assert outcome.handled and outcome.redraw
        assert controller.state.auto_follow
        assert controller.sink.selected == 2

        controller.handle_key("f")
        assert not controller.state.auto_follow
        assert controller.sink.selected == 2

    def test_toggle_capture_flips_label(self):
        controller = TraceController(1, CONFIG)
        assert controller.capture_label == STOP_LABEL

        outcome = controller.handle_key("f9")

        assert outcome.action is KeyAction.TOGGLE_CAPTURE
        assert outcome.redraw
        assert not controller.state.capturing_enabled
        assert controller.capture_label == RESUME_LABEL

        controller.handle_key("t")
        assert controller.state.capturing_enabled
        assert controller.capture_label == STOP_LABEL

    def test_navigation_releases_follow(self):
        """Test other keys drop follow, keep capture and leave the selection alone."""
        controller = TraceController(1, CONFIG)
        controller.sink.append_line("a")
        controller.sink.append_line("b")
        controller.handle_key("f8")
        controller.handle_key("f9")

        outcome = controller.handle_key("up")

        assert outcome.action is KeyAction.NAVIGATE
        assert not outcome.handled
        assert outcome.redraw
        assert not controller.state.auto_follow
        assert not controller.state.capturing_enabled
        assert controller.sink.selected == 1

    def test_navigation_redraws_only_when_follow_changes(self):
        controller = TraceController(1, CONFIG)
        controller.handle_key("f8")

        assert controller.handle_key("down").redraw
        assert not controller.handle_key("down").redraw

    def test_search_and_filter_keys_keep_follow(self):
        controller = TraceController(1, CONFIG)
        controller.handle_key("f8")

        for key in ("f3", "slash", "f4", "backslash"):
            outcome = controller.handle_key(key)
            assert outcome.handled
            assert not outcome.redraw

        assert controller.state.auto_follow

    def test_toggle_keys_do_not_release_follow(self):
        controller = TraceController(1, CONFIG)
        controller.handle_key("f8")

        controller.handle_key("f9")
        controller.handle_key("f9")

        assert controller.state.auto_follow

    def test_close_key(self):
        controller = make_controller()
        controller.open()
        session = controller.session

        outcome = controller.handle_key("escape")

        assert outcome.action is KeyAction.CLOSE
        assert controller.closed
        assert session.child_pid is None
        assert session.stream is None


class TestLifecycle:
    """Tests for opening, ticking and closing."""

    def test_trace_output_reaches_sink(self):
        controller = make_controller("printf 'alpha\\nbeta\\ngam'; printf 'ma\\n'")
        controller.open()

        run_until_exit(controller)

        assert controller.sink.lines == ["alpha", "beta", "gamma"]
        assert controller.session.exit_code == 0
        controller.close()

    def test_immediate_exit_produces_no_lines(self):
        """Test a tracer that exits silently is reaped and stops being read."""
        controller = make_controller("exit 0")
        controller.open()

        run_until_exit(controller)

        assert controller.sink.lines == []
        assert controller.session.child_pid is None
        assert controller.tick().bytes_read == 0
        controller.close()

    def test_missing_tracer_shows_diagnostic_line(self):
        tracer = ChildProcessController(CONFIG, command_builder=lambda pid: ["/no/such/strace"])
        controller = TraceController(5, CONFIG, tracer=tracer)
        controller.open()

        run_until_exit(controller)

        assert any("Could not execute '/no/such/strace'" in line for line in controller.sink.lines)
        assert controller.session.exit_code == EXEC_FAILED_STATUS
        controller.close()

    def test_unsupported_platform_shows_notice(self):
        controller = TraceController(5, CONFIG, tracer=UnsupportedTracer(CONFIG))
        controller.open()

        assert controller.session is None
        assert controller.unavailable_reason is not None
        assert controller.sink.lines == [f"Tracing unavailable: {controller.unavailable_reason}"]
        assert not controller.tracer_alive

        # The screen stays usable
        assert controller.tick().bytes_read == 0
        assert controller.handle_key("f8").redraw
        controller.close()
        assert controller.closed

    def test_tick_opens_lazily(self):
        controller = make_controller("echo hi")

        controller.tick()
        assert controller.session is not None
        run_until_exit(controller)

        assert controller.sink.lines == ["hi"]
        controller.close()

    def test_close_is_idempotent(self):
        controller = make_controller()
        controller.open()

        controller.close()
        controller.close()

        assert controller.closed
        assert controller.tick().bytes_read == 0
        assert controller.pump().bytes_read == 0

    def test_close_before_open(self):
        controller = make_controller()

        controller.close()

        assert controller.session is None
        assert controller.tick().bytes_read == 0

    def test_pause_discards_partial_line(self):
        """Test output after a resume starts a new line instead of extending a cut one."""
        controller = TraceController(1, CONFIG)
        assembler = controller._assembler
        controller.sink.apply(assembler.feed(b"read(3, ").segments)

        controller.handle_key("f9")
        controller.handle_key("f9")
        controller.sink.apply(assembler.feed(b"write(1, \"x\", 1) = 1\n").segments)

        assert controller.sink.lines[-2:] == ["read(3, ", 'write(1, "x", 1) = 1']
        controller.close()

    def test_paused_from_the_start(self):
        """Test output read while paused never reaches the buffer."""
        controller = make_controller("echo first; echo second")
        controller.open()
        controller.handle_key("t")

        run_until_exit(controller)

        assert controller.sink.lines == []
        controller.close()

    def test_run_until_close_key(self):
        keys = PipeKeys("down", "f8", "escape")
        controller = make_controller(key_source=keys)
        try:
            controller.open()
            controller.run()

            assert controller.closed
            assert controller.state.auto_follow
            assert controller.session.child_pid is None
        finally:
            keys.close()

    def test_run_requires_key_source(self):
        controller = TraceController(1, CONFIG)

        with pytest.raises(ValueError):
            controller.run()


class TestSearchAndFilter:
    """Tests for jumping to and narrowing down trace lines."""

    def make_filled(self) -> TraceController:
        controller = TraceController(1, CONFIG)
        for line in ("openat(3) = 3", "read(3) = 10", "close(3) = 0", "READ(4) = 0"):
            controller.sink.append_line(line)
        return controller

    def test_search_selects_next_match(self):
        controller = self.make_filled()

        assert controller.search("read") == 1
        assert controller.sink.selected == 1
        assert controller.search_text == "read"

    def test_search_continues_after_selection_and_wraps(self):
        controller = self.make_filled()

        assert controller.search("read") == 1
        assert controller.search("read") == 3
        assert controller.search("read") == 1

    def test_search_releases_follow(self):
        controller = self.make_filled()
        controller.handle_key("f8")

        controller.search("openat")

        assert not controller.state.auto_follow
        controller.sink.append_line("write(1) = 1")
        assert controller.sink.selected == 0

    def test_search_without_match_keeps_state(self):
        controller = self.make_filled()
        controller.handle_key("f8")

        assert controller.search("mmap") is None
        assert controller.state.auto_follow
        assert controller.sink.selected == 3

    def test_search_skips_filtered_lines(self):
        controller = self.make_filled()
        controller.set_filter("(4)")

        assert controller.search("read") == 3

    def test_filter_keeps_every_line_buffered(self):
        controller = self.make_filled()

        controller.set_filter("close")

        assert controller.state.filter_text == "close"
        assert len(controller.sink) == 4
