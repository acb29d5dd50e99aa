"""CLI entry point for tracetop."""

import logging

import typer
from textual.logging import TextualHandler

from tracetop.app import TraceApp
from tracetop.models import TraceConfig

app = typer.Typer(
    name="tracetop",
    help="Attach a system call tracer to a process and watch its output live.",
    add_completion=False,
)


def setup_logging(verbose: bool = False, log_file: str | None = None) -> None:
    """Send log records to a file or the Textual console, never the screen itself."""
    level = logging.DEBUG if verbose else logging.INFO
    handler: logging.Handler = logging.FileHandler(log_file) if log_file else TextualHandler()
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        handlers=[handler],
    )


@app.command()
def trace(
    pid: int = typer.Argument(..., min=1, help="Process id to trace."),
    string_limit: int = typer.Option(
        512, "--string-limit", "-s", help="Truncate traced strings to this many characters."
    ),
    follow: bool = typer.Option(False, "--follow", "-f", help="Start with auto-follow on."),
    paused: bool = typer.Option(False, "--paused", help="Start with capture paused."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    log_file: str | None = typer.Option(None, "--log-file", help="Write logs to this file."),
) -> None:
    """Trace PID until Esc is pressed."""
    setup_logging(verbose, log_file)
    config = TraceConfig(string_limit=string_limit)
    TraceApp(pid, config, follow=follow, capture=not paused).run()


def main() -> None:
    """Entry point for the tracetop command."""
    app()


if __name__ == "__main__":
    main()
