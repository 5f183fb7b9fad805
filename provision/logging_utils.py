"""Logging setup for the provision CLI."""

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

_logging = logging.getLogger(__name__)


def setup_logging(debug: bool = False) -> None:
    """Configure console logging for the ``provision`` logger.

    Console output goes to stderr at WARNING (DEBUG with ``debug``) so it does
    not mix with the progress lines printed on stdout. Calling it again
    replaces the previous handlers.
    """
    logger = logging.getLogger("provision")
    reset_logging()
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if debug else logging.WARNING)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console)


def add_log_file(log_file: Path) -> None:
    """Record everything at DEBUG with timestamps in ``log_file``."""
    logger = logging.getLogger("provision")
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
    except OSError as e:
        _logging.warning(f"Cannot write log file {log_file}: {e}")
        return
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z"))
    logger.addHandler(handler)
    _logging.debug(f"Logging to {log_file}")


def reset_logging() -> None:
    """Remove handlers installed by setup_logging and add_log_file."""
    logger = logging.getLogger("provision")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
