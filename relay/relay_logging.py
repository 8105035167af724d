"""Logging setup for the relay daemon.

Adds the downstream client id to log records via a ContextVar, so that
messages emitted while handling one client's envelope can be correlated:

    with logging_context(client_id="c1"):
        logger.info("forwarding command")   # record.client_id == "c1"

configure_logging() installs the root handlers. Interactive runs get a
rich console handler; daemon runs log plain lines.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


client_context: ContextVar[Optional[str]] = ContextVar('client_id', default=None)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s%(client_tag)s: %(message)s"


@contextmanager
def logging_context(client_id: Optional[str] = None):
    """Context manager for setting the client id on log records."""
    token = client_context.set(client_id)
    try:
        yield
    finally:
        client_context.reset(token)


class ClientContextFilter(logging.Filter):
    """Logging filter that adds client context to log records.

    Adds:
    - client_id: current client id or empty string
    - client_tag: " [client_id]" or empty string, for format strings
    """

    def filter(self, record: logging.LogRecord) -> bool:
        client_id = client_context.get() or ""
        record.client_id = client_id
        record.client_tag = f" [{client_id}]" if client_id else ""
        return True


def configure_logging(level: int = logging.INFO, rich_console: bool = True) -> None:
    """Install the root log handler.

    Daemon mode redirects stderr to the log file, so a single stderr handler
    covers both cases.

    Args:
        level: Root log level.
        rich_console: Use a rich handler when stderr is a terminal.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    context_filter = ClientContextFilter()

    if rich_console and sys.stderr.isatty():
        console_handler: logging.Handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        console_handler.setFormatter(logging.Formatter("%(name)s%(client_tag)s: %(message)s"))
    else:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    console_handler.addFilter(context_filter)
    root.addHandler(console_handler)
