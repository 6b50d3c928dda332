"""Process entry point: logging, signals and the orchestrator run.

Usage:
    from hot_keeper.config import load_settings
    from hot_keeper.daemon.runner import run_hot_keeper

    settings = load_settings()
    sys.exit(run_hot_keeper("app.py", settings))
"""

import asyncio
import sys
from pathlib import Path

from loguru import logger

from hot_keeper.config import RuntimeConfig, Settings
from hot_keeper.core.errors import HotKeeperError
from hot_keeper.core.orchestrator import EXIT_FAILURE, RestartOrchestrator

from .graceful_shutdown import AsyncShutdownHandler


async def serve(config: RuntimeConfig) -> int:
    """Run one orchestrator until termination and return its exit status."""
    orchestrator = RestartOrchestrator(config)
    handler = AsyncShutdownHandler(orchestrator.request_shutdown)
    handler.setup()
    try:
        return await orchestrator.run()
    finally:
        handler.remove()
        # Drain loguru's enqueue thread so final messages are written
        await logger.complete()


def run_hot_keeper(entry: str, settings: Settings, cwd: Path | None = None) -> int:
    """Resolve ``settings`` for ``entry`` and serve with hot reload.

    Returns:
        0 after a clean signal-triggered shutdown, 1 on any fatal error.
    """
    try:
        config = settings.resolve(entry, cwd=cwd)
    except HotKeeperError as e:
        logger.critical("{}", e)
        return EXIT_FAILURE

    # A .pyc written now could be reused after an edit with the same size and mtime second
    sys.dont_write_bytecode = True
    return asyncio.run(serve(config))
