"""Rich console logging for bitswarm."""

from __future__ import annotations

import logging
import sys

from rich.console import Console
from rich.logging import RichHandler


class CorrelationRichHandler(RichHandler):
    """RichHandler that appends the record's correlation ID when present."""

    def render_message(self, record: logging.LogRecord, message: str):
        """Render the message, suffixed with a short correlation ID."""
        corr_id = getattr(record, "correlation_id", None)
        if corr_id and corr_id != "no-correlation-id":
            message = f"{message} ({corr_id[:8]})"
        return super().render_message(record, message)


def create_rich_handler(
    console: Console | None = None,
    level: int | str = logging.INFO,
    show_path: bool = False,
    rich_tracebacks: bool = True,
) -> logging.Handler:
    """Create a console handler backed by Rich.

    Args:
        console: Optional Rich Console instance (defaults to stderr)
        level: Log level
        show_path: Whether to show file paths in log output
        rich_tracebacks: Whether to use rich tracebacks

    Returns:
        Configured handler instance
    """
    if console is None:
        console = Console(file=sys.stderr)
    handler = CorrelationRichHandler(
        console=console,
        show_path=show_path,
        rich_tracebacks=rich_tracebacks,
        markup=False,
        log_time_format="[%X]",
    )
    handler.setLevel(level)
    return handler
