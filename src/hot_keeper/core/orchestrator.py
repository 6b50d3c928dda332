"""Restart orchestrator: the state machine tying reloads to listener generations.

States::

    IDLE --change--> RESTARTING --done/failed--> IDLE
    IDLE/RESTARTING --signal or fatal error--> SHUTTING_DOWN --> TERMINATED

A restart runs, in order: module cache invalidation, a fresh import of the
entry module, shutdown of the outgoing generation, and start of a new one.
Only one restart runs at a time; triggers arriving meanwhile are dropped.

Failure policy:
- Anything failing during the first start is fatal (exit status 1).
- A reload or bind failure during a restart leaves the process alive with no
  active listener until the next successful reload.
- Missing certificates, a listener that will not close after forcing, and a
  dead file watcher are fatal at any time.

Everything runs on one event loop; state is only mutated from loop callbacks
and tasks, so there is no locking.
"""

import asyncio
import sys
import time
from enum import Enum
from types import ModuleType
from typing import Callable, MutableMapping, Optional

from loguru import logger

from .app_loader import AppTarget, load_entry
from .change_bridge import ChangeEventBridge
from .errors import BindFailure, HotKeeperError, ReloadFailure, WatcherFailure
from .invalidator import invalidate
from .listener import FORCE_CLOSE_TIMEOUT, LINGER_SECONDS, LIFESPAN_SHUTDOWN_TIMEOUT, ListenerManager

EXIT_OK = 0
EXIT_FAILURE = 1


class OrchestratorState(Enum):
    """Orchestrator lifecycle."""

    IDLE = "idle"
    RESTARTING = "restarting"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class RestartOrchestrator:
    """Coordinate invalidation, reload and listener recreation.

    Args:
        config: Frozen runtime configuration.
        listener: Listener manager (a fresh one by default).
        bridge_factory: Builds the change bridge; receives the path filter,
            the restart callback and the debounce window.
        modules: Module cache to invalidate (default ``sys.modules``).

    Example:
        >>> orchestrator = RestartOrchestrator(settings.resolve("app.py"))
        >>> exit_code = asyncio.run(orchestrator.run())
    """

    def __init__(
        self,
        config,
        listener: Optional[ListenerManager] = None,
        bridge_factory: Callable[..., ChangeEventBridge] = ChangeEventBridge,
        modules: Optional[MutableMapping[str, ModuleType]] = None,
    ):
        self.config = config
        self.listener = listener or ListenerManager()
        self.state = OrchestratorState.IDLE
        self.restart_count = 0
        self.dropped_triggers = 0
        self.fatal_error: Optional[BaseException] = None

        self._bridge_factory = bridge_factory
        self._modules = modules if modules is not None else sys.modules
        self._bridge: Optional[ChangeEventBridge] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._health_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def generation(self):
        """The active listener generation, or None while degraded."""
        return self.listener.active

    @property
    def restart_task(self) -> Optional[asyncio.Task]:
        return self._restart_task

    def _load(self) -> AppTarget:
        return load_entry(
            self.config.entry,
            secure=self.config.secure,
            path_filter=self.config.path_filter,
        )

    async def start(self) -> None:
        """Load the entry module and bind the first generation.

        Raises:
            HotKeeperError: Any failure; the caller treats it as fatal.
        """
        logger.info("Starting {}", self.config.entry)
        target = self._load()
        await self.listener.start(target, self.config)
        self.state = OrchestratorState.IDLE

    def request_restart(self, path: Optional[str] = None) -> bool:
        """Ask for a restart; returns False if the trigger was dropped."""
        if self.state is OrchestratorState.RESTARTING:
            self.dropped_triggers += 1
            logger.debug("Restart already in progress, dropping trigger for {}", path)
            return False
        if self.state is not OrchestratorState.IDLE:
            logger.debug("Ignoring change while {}: {}", self.state.value, path)
            return False

        self.state = OrchestratorState.RESTARTING
        self._restart_task = asyncio.get_running_loop().create_task(self._restart(path))
        return True

    async def _restart(self, path: Optional[str]) -> None:
        started = time.monotonic()
        logger.info("Restarting server{}", f" after change to {path}" if path else "")
        try:
            outgoing = self.listener.active
            target: Optional[AppTarget] = None
            try:
                removed = invalidate(self.config.path_filter, self._modules)
                logger.debug("Cleared {} cached modules", len(removed))
                target = self._load()
            except ReloadFailure as e:
                logger.error("Reload failed: {}", e)

            await self.listener.shutdown(outgoing, self.config.restart_timeout)

            if self.state is OrchestratorState.SHUTTING_DOWN:
                logger.info("Shutdown requested during restart, not starting a new server")
                return
            if target is None:
                logger.warning("No active listener until the next successful reload")
                return

            try:
                await self.listener.start(target, self.config)
            except BindFailure as e:
                logger.error("Failed to start server: {}", e)
                logger.warning("No active listener until the next successful reload")
                return

            self.restart_count += 1
            logger.info("Restart complete in {:.0f} ms", (time.monotonic() - started) * 1000)
        except HotKeeperError as e:
            if e.fatal:
                self._fail(e)
            else:
                logger.error("Restart failed: {}", e)
        except Exception as e:
            logger.opt(exception=e).error("Unexpected error during restart: {}", e)
        finally:
            if self.state is OrchestratorState.RESTARTING:
                self.state = OrchestratorState.IDLE

    def _fail(self, error: BaseException) -> None:
        logger.critical("Fatal: {}", error)
        if self.fatal_error is None:
            self.fatal_error = error
        if self._stop_event is not None:
            self._stop_event.set()

    def request_shutdown(self, reason: str = "shutdown requested") -> None:
        """Begin termination; repeated requests are ignored."""
        if self._stop_event is None:
            self._stop_event = asyncio.Event()
        if self._stop_event.is_set() or self.state in (
            OrchestratorState.SHUTTING_DOWN,
            OrchestratorState.TERMINATED,
        ):
            logger.info("Already shutting down, ignoring {}", reason)
            return
        logger.info("Received {}, shutting down", reason)
        self._stop_event.set()

    async def _monitor_watcher(self) -> None:
        interval = self.config.watcher_check_interval
        while True:
            await asyncio.sleep(interval)
            if self.state in (OrchestratorState.SHUTTING_DOWN, OrchestratorState.TERMINATED):
                return
            if self._bridge is not None and not self._bridge.is_alive():
                self._fail(WatcherFailure("File watcher stopped unexpectedly"))
                return

    async def shutdown(self) -> int:
        """Stop watching, wait for an in-flight restart, then close the listener.

        Returns:
            Exit status: 0 on a clean shutdown, 1 after a fatal error or when
            the listener failed to close in time.
        """
        if self.state is OrchestratorState.TERMINATED:
            return EXIT_FAILURE if self.fatal_error else EXIT_OK
        self.state = OrchestratorState.SHUTTING_DOWN
        exit_code = EXIT_FAILURE if self.fatal_error else EXIT_OK

        if self._health_task is not None:
            self._health_task.cancel()

        if self._bridge is not None:
            try:
                await self._bridge.close()
            except Exception as e:
                logger.error("Error closing file watcher: {}", e)

        task = self._restart_task
        if task is not None and not task.done():
            # Drain of the outgoing generation, then startup of the new one
            restart_ceiling = (
                self.config.restart_timeout
                + self.config.startup_timeout
                + LINGER_SECONDS
                + FORCE_CLOSE_TIMEOUT
                + LIFESPAN_SHUTDOWN_TIMEOUT
            )
            logger.info("Waiting for the in-flight restart to finish")
            done, _ = await asyncio.wait([task], timeout=restart_ceiling)
            if not done:
                logger.error("In-flight restart still running after {}s, cancelling it", restart_ceiling)
                task.cancel()
                await asyncio.wait([task], timeout=LINGER_SECONDS)
                exit_code = EXIT_FAILURE

        deadline = self.config.cleanup_timeout
        ceiling = deadline + LINGER_SECONDS + FORCE_CLOSE_TIMEOUT + LIFESPAN_SHUTDOWN_TIMEOUT
        try:
            await asyncio.wait_for(self.listener.shutdown(self.listener.active, deadline), timeout=ceiling)
        except asyncio.TimeoutError:
            logger.error("Cleanup timed out after {}s, forcing exit", ceiling)
            exit_code = EXIT_FAILURE
        except HotKeeperError as e:
            logger.error("Error during cleanup: {}", e)
            exit_code = EXIT_FAILURE

        self.state = OrchestratorState.TERMINATED
        return exit_code

    async def run(self) -> int:
        """Serve until a termination request or a fatal error.

        Returns:
            Process exit status.
        """
        if self._stop_event is None:
            self._stop_event = asyncio.Event()

        try:
            await self.start()
        except Exception as e:
            logger.critical("Error starting server: {}", e)
            self.fatal_error = e
            self.state = OrchestratorState.TERMINATED
            return EXIT_FAILURE

        try:
            self._bridge = self._bridge_factory(
                self.config.path_filter,
                self.request_restart,
                debounce_ms=self.config.debounce_ms,
            )
            self._bridge.start()
        except WatcherFailure as e:
            self._fail(e)
        else:
            self._health_task = asyncio.get_running_loop().create_task(self._monitor_watcher())

        await self._stop_event.wait()
        return await self.shutdown()
