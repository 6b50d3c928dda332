"""Filesystem watcher that turns file changes into restart triggers.

Watchdog observers run in their own threads. Every file event is checked
against the shared ``PathFilter`` there, and only qualifying paths cross into
the event loop (via ``call_soon_threadsafe``), where the restart callback runs.

Cross-platform concerns:
- Network paths (UNC shares, /mnt/, /net/) use ``PollingObserver``.
- Hitting the inotify watch limit falls back to ``PollingObserver``.
- A watch path that is a single file is watched through its parent
  directory, non-recursively.
"""

import asyncio
import os
from typing import Any, Callable, List, Optional

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from .errors import WatcherFailure
from .path_filter import PathFilter

TRIGGER_EVENTS = frozenset({"modified", "created", "deleted", "moved"})


def _is_network_path(path: str) -> bool:
    """Detect if path is on a network filesystem.

    Args:
        path: Absolute path to check

    Returns:
        True for UNC paths (\\\\server\\share) and common network mounts
    """
    if path.startswith('\\\\'):
        return True
    return path.startswith('/mnt/') or path.startswith('/net/')


class _ChangeHandler(FileSystemEventHandler):
    """Filter raw watchdog events and hand qualifying paths to the bridge."""

    def __init__(self, bridge: "ChangeEventBridge"):
        super().__init__()
        self._bridge = bridge

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in TRIGGER_EVENTS:
            return
        paths = [event.src_path]
        dest = getattr(event, "dest_path", None)
        if dest:
            paths.append(dest)
        for path in paths:
            self._bridge._observe(os.fsdecode(path))


class ChangeEventBridge:
    """Watch the configured paths and request a restart per qualifying change.

    Each qualifying change yields one call to ``on_change(path)`` on the event
    loop. Bursts are not coalesced unless ``debounce_ms`` is positive, in which
    case the last path of a burst is delivered once the burst has been quiet
    for ``debounce_ms``.

    Lifecycle:
        1. ``start()`` from the event loop thread
        2. ``is_alive()`` for health checks
        3. ``await close()`` to stop the observers
    """

    def __init__(
        self,
        path_filter: PathFilter,
        on_change: Callable[[str], Any],
        debounce_ms: int = 0,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self._filter = path_filter
        self._on_change = on_change
        self._debounce_seconds = max(debounce_ms, 0) / 1000.0
        self._loop = loop
        self._observers: List[Any] = []
        self._pending: Optional[asyncio.TimerHandle] = None
        self._closed = False

    def _create_observer(self, path: str) -> Any:
        """Native observer, or a polling one for network paths and inotify exhaustion."""
        if _is_network_path(path):
            logger.warning("Network path detected, using PollingObserver: {}", path)
            return PollingObserver(timeout=2)
        return Observer()

    def _schedule(self, handler: _ChangeHandler, watch_path: str) -> None:
        if os.path.isdir(watch_path):
            directory, recursive = watch_path, True
        else:
            directory, recursive = os.path.dirname(watch_path), False

        observer = self._create_observer(directory)
        observer.schedule(handler, directory, recursive=recursive)
        try:
            observer.start()
        except OSError as e:
            if 'inotify' not in str(e).lower() and getattr(e, 'errno', None) != 28:
                raise
            logger.warning("inotify limit reached, falling back to PollingObserver: {}", e)
            observer = PollingObserver(timeout=2)
            observer.schedule(handler, directory, recursive=recursive)
            observer.start()
        self._observers.append(observer)
        logger.debug("Started watching: {} (recursive={})", directory, recursive)

    def start(self) -> None:
        """Start one observer per watch path.

        Raises:
            WatcherFailure: If no watch path exists or an observer fails to start.
        """
        if self._observers:
            logger.warning("Change watcher already started")
            return
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        handler = _ChangeHandler(self)
        for watch_path in self._filter.watch_paths:
            if not os.path.exists(watch_path):
                logger.warning("Watch path does not exist, skipping: {}", watch_path)
                continue
            try:
                self._schedule(handler, watch_path)
            except Exception as e:
                self._stop_observers()
                raise WatcherFailure(f"Failed to watch {watch_path}: {e}") from e

        if not self._observers:
            raise WatcherFailure("None of the watch paths exist")

        logger.info("Watching for changes in: {}", ", ".join(self._filter.watch_paths))
        logger.info("Ignoring: {}", ", ".join(self._filter.glob_patterns()))

    def is_alive(self) -> bool:
        """True while every observer thread is running."""
        return bool(self._observers) and all(o.is_alive() for o in self._observers)

    def _observe(self, path: str) -> None:
        # Runs on an observer thread
        if self._closed or not self._filter.matches(path):
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._dispatch, path)
        except RuntimeError:
            pass  # loop closed between the check and the call

    def _dispatch(self, path: str) -> None:
        if self._closed:
            return
        if self._debounce_seconds <= 0:
            self._deliver(path)
            return
        if self._pending is not None:
            self._pending.cancel()
        self._pending = self._loop.call_later(self._debounce_seconds, self._deliver, path)

    def _deliver(self, path: str) -> None:
        self._pending = None
        if self._closed:
            return
        logger.info("File changed: {}", path)
        self._on_change(path)

    def _stop_observers(self) -> None:
        for observer in self._observers:
            try:
                observer.stop()
                observer.join(timeout=2.0)
            except Exception as e:
                logger.error("Error stopping observer: {}", e)
        self._observers.clear()

    async def close(self) -> None:
        """Stop delivering events and tear the observers down. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        await asyncio.to_thread(self._stop_observers)
        logger.info("Change watcher stopped")
