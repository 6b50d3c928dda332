"""Process plumbing for hot-keeper: logging, signals and the run entry point."""

from .graceful_shutdown import AsyncShutdownHandler
from .logging_setup import setup_logging

__all__ = [
    'AsyncShutdownHandler',
    'setup_logging',
]
