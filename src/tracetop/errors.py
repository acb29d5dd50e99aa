"""Exceptions raised by tracetop."""


class TraceError(Exception):
    """Base class for tracing failures."""


class SpawnError(TraceError):
    """The tracer could not be started (pipe, non-blocking setup or fork failed)."""


class UnsupportedPlatformError(SpawnError):
    """No known system call tracer exists for this platform."""

    def __init__(self, platform: str) -> None:
        super().__init__(f"Tracing unavailable on unsupported platform {platform!r}")
        self.platform = platform


class StreamReadError(TraceError):
    """Reading the tracer's output failed; callers treat it as an empty read."""
