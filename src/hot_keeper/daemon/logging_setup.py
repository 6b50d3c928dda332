"""Loguru logging setup for hot-keeper.

Usage:
    from hot_keeper.daemon.logging_setup import setup_logging

    # At startup
    setup_logging(log_level="INFO")

    # In modules
    from loguru import logger
    logger.info("Restart complete in {} ms", elapsed)

Features:
    - Async-safe with enqueue=True
    - Colored console output
    - Optional file output with rotation (10 MB) and retention (7 days)
"""

import sys
from pathlib import Path

from loguru import logger

# Default console format with colors
CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)

# Simple format without colors (for file output)
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | "
    "{level: <8} | "
    "{name}:{function}:{line} | "
    "{message}"
)


def setup_logging(
    log_level: str | None = None,
    console: bool = True,
    log_file: Path | None = None,
    serialize_file: bool = False,
    diagnose: bool = False,
) -> None:
    """Configure logging with console and optional file handlers.

    Uses ``enqueue=True`` so that log calls from watchdog observer threads
    never block the event loop. Callers MUST call ``await logger.complete()``
    before process exit to drain the queue.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
            Defaults to INFO.
        console: Enable console (stderr) output.
        log_file: Write logs to this file as well, rotated at 10 MB.
        serialize_file: Use JSON format for file logs.
        diagnose: Show variable values in tracebacks.

    Example:
        >>> setup_logging()  # Use defaults
        >>> setup_logging(log_level="DEBUG", log_file=Path("hot-keeper.log"))
    """
    # Remove default handler
    logger.remove()

    if log_level is None:
        log_level = "INFO"
    log_level = log_level.upper()

    if console:
        logger.add(
            sys.stderr,
            format=CONSOLE_FORMAT,
            level=log_level,
            colorize=True,
            backtrace=True,
            diagnose=diagnose,
            enqueue=True,
        )

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        logger.add(
            str(log_file),
            level=log_level,
            format=FILE_FORMAT,
            rotation="10 MB",
            retention="7 days",
            compression="gz",
            serialize=serialize_file,
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )
