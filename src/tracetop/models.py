"""Data models for tracetop."""

from dataclasses import dataclass
from io import FileIO


@dataclass(slots=True, frozen=True)
class TargetProcess:
    """Immutable description of the process being traced."""

    pid: int
    name: str
    command_line: str


@dataclass(slots=True)
class TraceSession:
    """A tracer child bound to one target process."""

    target_pid: int
    child_pid: int | None = None  # Cleared once the child has been reaped
    is_alive: bool = False
    stream: FileIO | None = None
    exit_code: int | None = None


@dataclass(slots=True)
class ScreenState:
    """Operator-controlled toggles of the trace screen."""

    capturing_enabled: bool = True
    auto_follow: bool = False
    filter_text: str = ""  # Only lines containing this are shown


@dataclass(slots=True)
class TraceConfig:
    """Tunables for spawning the tracer and polling its output."""

    poll_timeout: float = 0.0005  # Seconds; the only blocking point per tick
    chunk_size: int = 1024  # Bytes per read
    string_limit: int = 512  # Tracer's per-argument string truncation
    refresh_interval: float = 0.02  # Seconds between UI pumps
    max_ticks_per_refresh: int = 256

    def __post_init__(self) -> None:
        self.poll_timeout = min(max(0.0, self.poll_timeout), 0.05)
        self.chunk_size = max(1, self.chunk_size)
        self.string_limit = max(16, self.string_limit)
        self.refresh_interval = max(0.001, self.refresh_interval)
        self.max_ticks_per_refresh = max(1, self.max_ticks_per_refresh)
