"""Logging setup shared by the CLI and the API server."""

import logging

from rich.logging import RichHandler


def configure_logging(level: str = "INFO") -> None:
    """
    Route standard library logging through a rich console handler.

    Safe to call more than once; the root handlers are replaced.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR)
    """
    logging.basicConfig(
        level=level,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
