"""Tracer child process management for tracetop."""

import logging
import os
import shutil
import signal
import sys
from collections.abc import Callable, Sequence
from contextlib import suppress

import psutil

from tracetop.errors import SpawnError, StreamReadError, UnsupportedPlatformError
from tracetop.models import TargetProcess, TraceConfig, TraceSession

logger = logging.getLogger(__name__)

# Exit status of a child whose exec failed; distinct from a normal tracer exit.
EXEC_FAILED_STATUS = 127

_TRUSS_PLATFORMS = ("freebsd", "openbsd", "netbsd", "dragonfly", "sunos")

CommandBuilder = Callable[[int], Sequence[str]]


def tracer_command(pid: int, platform: str | None = None, string_limit: int = 512) -> list[str]:
    """
    Build the tracer command line for a target pid.

    Args:
        pid: Process to attach to.
        platform: A ``sys.platform`` value. Defaults to the running platform.
        string_limit: Maximum length of strings printed per call argument.

    Raises:
        UnsupportedPlatformError: If no tracer is known for the platform.
    """
    platform = sys.platform if platform is None else platform
    if platform.startswith("linux"):
        # -tt: wall-clock timestamps, -T: time spent in each call
        return ["strace", "-T", "-tt", "-s", str(string_limit), "-p", str(pid)]
    if platform.startswith(_TRUSS_PLATFORMS):
        return ["truss", "-d", "-s", str(string_limit), "-p", str(pid)]
    raise UnsupportedPlatformError(platform)


def describe_process(pid: int) -> TargetProcess:
    """Resolve the name and command line of a process, tolerating vanished ones."""
    try:
        proc = psutil.Process(pid)
        with proc.oneshot():
            name = proc.name()
            cmdline = proc.cmdline()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return TargetProcess(pid=pid, name="", command_line="")

    return TargetProcess(
        pid=pid,
        name=name or "",
        command_line=" ".join(cmdline) if cmdline else (name or ""),
    )


class ChildProcessController:
    """
    Spawns the tracer and owns its lifecycle.

    The tracer's stdout and stderr share one non-blocking pipe whose read end
    stays with the parent. At most one child is tracked at a time.
    """

    def __init__(
        self,
        config: TraceConfig | None = None,
        command_builder: CommandBuilder | None = None,
    ) -> None:
        """
        Initialize the ChildProcessController.

        Args:
            config: Tunables; only ``string_limit`` and ``chunk_size`` are used here.
            command_builder: Maps a target pid to an argv. Defaults to the
                platform tracer from :func:`tracer_command`.
        """
        self._config = config or TraceConfig()
        self._command_builder = command_builder
        self._active: TraceSession | None = None

    @property
    def active_session(self) -> TraceSession | None:
        """The session whose child is currently tracked, if any."""
        return self._active

    def build_command(self, target_pid: int) -> list[str]:
        """Return the argv that :meth:`start` would execute."""
        if self._command_builder is not None:
            return list(self._command_builder(target_pid))
        return tracer_command(target_pid, string_limit=self._config.string_limit)

    def start(self, target_pid: int) -> TraceSession:
        """
        Spawn the tracer against ``target_pid``.

        Raises:
            UnsupportedPlatformError: No tracer is known for this platform.
            SpawnError: A child is already tracked, or the pipe, the
                non-blocking setup or the fork failed.
        """
        if self._active is not None:
            if self._active.child_pid is not None:
                raise SpawnError(f"A tracer is already running (pid {self._active.child_pid})")
            # Child already reaped; release the stream it left behind
            self.shutdown(self._active)

        argv = self.build_command(target_pid)
        if not argv:
            raise SpawnError("Empty tracer command")

        # Resolved before forking so the child only performs exec-safe calls
        executable = shutil.which(argv[0]) or argv[0]
        message = (
            f"Could not execute '{argv[0]}'. Please make sure it is available in your $PATH.\n"
        ).encode()

        try:
            read_fd, write_fd = os.pipe()
        except OSError as e:
            raise SpawnError(f"Could not create pipe: {e}") from e

        try:
            os.set_blocking(read_fd, False)
            os.set_blocking(write_fd, False)
            child_pid = os.fork()
        except OSError as e:
            os.close(write_fd)
            os.close(read_fd)
            raise SpawnError(f"Could not start tracer: {e}") from e

        if child_pid == 0:
            _exec_child(executable, argv, read_fd, write_fd, message)

        os.close(write_fd)
        try:
            stream = os.fdopen(read_fd, "rb", buffering=0)
        except OSError as e:
            os.close(read_fd)
            with suppress(ProcessLookupError):
                os.kill(child_pid, signal.SIGTERM)
            _reap(child_pid)
            raise SpawnError(f"Could not open tracer output: {e}") from e

        session = TraceSession(
            target_pid=target_pid,
            child_pid=child_pid,
            is_alive=True,
            stream=stream,
        )
        self._active = session
        logger.info(
            "Tracer started: pid=%d target=%d cmd=%s", child_pid, target_pid, " ".join(argv)
        )
        return session

    def read(self, session: TraceSession, size: int | None = None) -> bytes:
        """
        Read at most ``size`` bytes of tracer output without blocking.

        Returns ``b""`` when nothing is available or the stream is closed.

        Raises:
            StreamReadError: The read failed for a reason other than "would block".
        """
        stream = session.stream
        if stream is None or stream.closed:
            return b""
        try:
            data = stream.read(size or self._config.chunk_size)
        except BlockingIOError:
            return b""
        except OSError as e:
            raise StreamReadError(f"Reading tracer output failed: {e}") from e
        # A non-blocking FileIO returns None when the pipe is empty
        return data or b""

    def poll_exited(self, session: TraceSession) -> bool:
        """Check, without blocking, whether the tracer has terminated."""
        if session.child_pid is None:
            session.is_alive = False
            return True

        try:
            pid, status = os.waitpid(session.child_pid, os.WNOHANG)
        except ChildProcessError:
            self._forget_child(session, None)
            return True

        if pid == 0:
            return False

        self._forget_child(session, os.waitstatus_to_exitcode(status))
        return True

    def shutdown(self, session: TraceSession) -> None:
        """
        Terminate and reap the tracer, then close its stream.

        Safe to call repeatedly and after the child has already exited.
        """
        child_pid = session.child_pid
        if child_pid is not None:
            try:
                os.kill(child_pid, signal.SIGTERM)
            except ProcessLookupError:
                pass  # Exited but not reaped yet; the wait below collects it
            except OSError as e:
                logger.warning("Could not signal tracer pid=%d: %s", child_pid, e)
            else:
                logger.debug("Sent SIGTERM to tracer pid=%d", child_pid)
            self._forget_child(session, _reap(child_pid))

        if session.stream is not None:
            session.stream.close()
            session.stream = None
        session.is_alive = False

        if self._active is session:
            self._active = None

    def _forget_child(self, session: TraceSession, exit_code: int | None) -> None:
        """Record that the child is gone so its pid is never signalled again."""
        if session.child_pid is not None:
            logger.info("Tracer pid=%d exited (code=%s)", session.child_pid, exit_code)
        session.exit_code = exit_code
        session.child_pid = None
        session.is_alive = False


def _exec_child(
    executable: str,
    argv: Sequence[str],
    read_fd: int,
    write_fd: int,
    message: bytes,
) -> None:
    """Runs in the forked child: route output into the pipe and exec. Never returns."""
    try:
        os.close(read_fd)
        # The tracer must block on a full pipe rather than lose output to EAGAIN
        os.set_blocking(write_fd, True)
        null_fd = os.open(os.devnull, os.O_RDONLY)
        os.dup2(null_fd, 0)
        os.dup2(write_fd, 1)
        os.dup2(write_fd, 2)
        os.close(null_fd)
        os.close(write_fd)
        os.execv(executable, list(argv))
    except OSError:
        with suppress(OSError):
            os.write(2, message)
    finally:
        os._exit(EXEC_FAILED_STATUS)


def _reap(child_pid: int) -> int | None:
    """Block until ``child_pid`` is collected; returns its exit code when known."""
    while True:
        try:
            _, status = os.waitpid(child_pid, 0)
        except InterruptedError:
            continue
        except OSError as e:
            logger.debug("waitpid(%d) gave up: %s", child_pid, e)
            return None
        return os.waitstatus_to_exitcode(status)
