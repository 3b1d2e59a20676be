"""Logging setup for the command-line interface.

Library modules only create loggers with ``logging.getLogger(__name__)``;
handlers are installed here, once per CLI invocation.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(level: str = "INFO") -> None:
    """Route log records to stderr through rich.

    Args:
        level: Root log level name (DEBUG, INFO, ...).
    """
    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )


__all__ = ["configure_logging"]
