"""Signal handling for the hot-keeper process.

Usage:
    handler = AsyncShutdownHandler(orchestrator.request_shutdown)
    handler.setup()
    try:
        exit_code = await orchestrator.run()
    finally:
        handler.remove()

Features:
    - SIGTERM and SIGINT (plus SIGHUP where it exists)
    - Loop-native handlers, with a ``signal.signal`` fallback on Windows
    - The callback runs once; later signals are reported and ignored
"""

import asyncio
import signal
from typing import Callable, List, Optional

from loguru import logger

SHUTDOWN_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGTERM", "SIGINT", "SIGHUP") if hasattr(signal, name)
)


class AsyncShutdownHandler:
    """Route termination signals to a shutdown callback on the event loop."""

    def __init__(self, callback: Callable[[str], None]):
        """Initialize the shutdown handler.

        Args:
            callback: Called with the signal name on the first signal.
        """
        self._callback = callback
        self.running = True
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._installed: List[signal.Signals] = []
        self._fallback: List[signal.Signals] = []

    def setup(self) -> None:
        """Install signal handlers on the running loop."""
        self._loop = asyncio.get_running_loop()

        for sig in SHUTDOWN_SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self._handle_signal, sig)
                self._installed.append(sig)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                try:
                    signal.signal(sig, self._sync_handler)
                    self._fallback.append(sig)
                except ValueError:
                    # "signal only works in main thread"
                    logger.debug("Signal handler for {} not registered (not in main thread)", sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle signal in async context."""
        name = signal.Signals(sig).name
        if not self.running:
            logger.warning("Received {} again, shutdown already in progress", name)
            return
        self.running = False
        self._callback(name)

    def _sync_handler(self, signum: int, frame) -> None:
        """Sync signal handler for Windows."""
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._handle_signal, signum)

    def remove(self) -> None:
        """Restore default signal handling."""
        if self._loop is not None and not self._loop.is_closed():
            for sig in self._installed:
                self._loop.remove_signal_handler(sig)
        for sig in self._fallback:
            signal.signal(sig, signal.SIG_DFL)
        self._installed.clear()
        self._fallback.clear()
