"""Loguru configuration for the engine."""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[request_id]} | {name}:{function}:{line} - {message}"
_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def setup_logger(verbose: bool = False, log_file: Path | None = None) -> None:
    """
    Configure loguru sinks.

    Rules:
    1. FILE: when ``log_file`` is given, log DEBUG+ there (rotated).
    2. CONSOLE: DEBUG+ to stderr when verbose, WARNING+ otherwise.
    """
    logger.remove()
    logger.configure(extra={"request_id": "-"})

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            rotation="10 MB",
            retention="1 week",
            level="DEBUG",
            format=_FILE_FORMAT,
            enqueue=True,
        )

    logger.add(
        sys.stderr,
        format=_CONSOLE_FORMAT,
        level="DEBUG" if verbose else "WARNING",
    )


def get_request_logger(request_id: str):
    """Return a logger bound to a request id so one request's lines can be filtered."""
    return logger.bind(request_id=request_id)
