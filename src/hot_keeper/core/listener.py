"""Listener generations: bind, track connections, drain, force-close.

A generation is one listen socket, the application bound to it, and the set
of connections it accepted. Generations move through
``CREATED -> ACCEPTING -> DRAINING -> CLOSED`` and are never reused.

For ASGI applications the manager binds the socket itself with
``loop.create_server`` and speaks HTTP through uvicorn's protocol classes.
Every protocol instance is wrapped so that the generation's connection set
is filled on ``connection_made`` and emptied on ``connection_lost``.

Shutdown is a race between the connection set draining and a deadline. When
the deadline wins, every remaining transport is closed (flushing buffered
output), given ``LINGER_SECONDS`` to go away, then aborted.
"""

import asyncio
import inspect
import itertools
import ssl
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Set

import uvicorn
from loguru import logger
from uvicorn.server import ServerState

from .app_loader import AppTarget, HandlerOnly, SelfListening
from .errors import BindFailure, CertificateMissing, ConfigInvalid, ShutdownFatal, ShutdownTimeout

if TYPE_CHECKING:
    from hot_keeper.config import RuntimeConfig

# Time given to force-closed transports to flush before they are aborted
LINGER_SECONDS = 0.1

# After forcing, the listen socket must report closed within this window
FORCE_CLOSE_TIMEOUT = 1.0

LIFESPAN_SHUTDOWN_TIMEOUT = 1.0


class GenerationState(Enum):
    """Lifecycle of a listener generation."""

    CREATED = "created"
    ACCEPTING = "accepting"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass(eq=False)
class Connection:
    """One accepted transport and the protocol serving it."""

    transport: asyncio.BaseTransport
    protocol: asyncio.BaseProtocol
    opened_at: float = field(default_factory=time.monotonic)


class _TrackedProtocol(asyncio.Protocol):
    """Forward transport callbacks to ``inner`` and report open/close to the generation.

    uvicorn upgrades a connection to a websocket protocol with
    ``transport.set_protocol``. The tracked transport's ``set_protocol`` is
    redirected to swap ``inner`` instead, so this wrapper stays attached and
    still sees the upgraded connection's ``connection_lost``.
    """

    def __init__(self, inner: asyncio.Protocol, generation: "Generation"):
        self._inner = inner
        self._generation = generation
        self._connection: Optional[Connection] = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._connection = Connection(transport=transport, protocol=self._inner)
        self._generation._on_connection_open(self._connection)
        transport.set_protocol = self._replace_inner
        self._inner.connection_made(transport)

    def _replace_inner(self, protocol: asyncio.BaseProtocol) -> None:
        self._inner = protocol
        if self._connection is not None:
            self._connection.protocol = protocol

    def data_received(self, data: bytes) -> None:
        self._inner.data_received(data)

    def eof_received(self) -> Optional[bool]:
        return self._inner.eof_received()

    def pause_writing(self) -> None:
        self._inner.pause_writing()

    def resume_writing(self) -> None:
        self._inner.resume_writing()

    def connection_lost(self, exc: Optional[Exception]) -> None:
        try:
            self._inner.connection_lost(exc)
        finally:
            if self._connection is not None:
                self._generation._on_connection_close(self._connection)


class Generation:
    """One lifetime of the listen socket and its connections.

    Attributes:
        id: Monotonic generation number, starting at 1.
        target: The adapted application bound to this generation.
        state: Current ``GenerationState``.
        connections: Live connections; owned by this generation only.
        forced_count: Connections destroyed by the forced shutdown path.
    """

    _ids = itertools.count(1)

    def __init__(self, target: AppTarget, host: str, port: int):
        self.id = next(self._ids)
        self.target = target
        self.host = host
        self.port = port
        self.state = GenerationState.CREATED
        self.connections: Set[Connection] = set()
        self.forced_count = 0
        self._server: Any = None
        self._lifespan: Any = None
        self._drained = asyncio.Event()
        self._drained.set()
        self._closed = asyncio.Event()

    @property
    def accepting(self) -> bool:
        return self.state is GenerationState.ACCEPTING

    @property
    def bound_port(self) -> int:
        """Port actually bound (differs from ``port`` when binding port 0)."""
        sockets = getattr(self._server, "sockets", None)
        if sockets:
            return sockets[0].getsockname()[1]
        return self.port

    def _on_connection_open(self, connection: Connection) -> None:
        self.connections.add(connection)
        self._drained.clear()

    def _on_connection_close(self, connection: Connection) -> None:
        self.connections.discard(connection)
        if not self.connections:
            self._drained.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def __repr__(self) -> str:
        return (
            f"Generation(id={self.id}, state={self.state.value}, "
            f"kind={self.target.kind.value}, connections={len(self.connections)})"
        )


def load_ssl_context(cert_path: Optional[Path], key_path: Optional[Path]) -> ssl.SSLContext:
    """Build a server-side TLS context from PEM files.

    Raises:
        CertificateMissing: If either file does not exist.
        ConfigInvalid: If the files exist but cannot be loaded.
    """
    if (
        cert_path is None
        or key_path is None
        or not Path(cert_path).is_file()
        or not Path(key_path).is_file()
    ):
        raise CertificateMissing(cert_path, key_path)

    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    try:
        context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
    except (ssl.SSLError, OSError) as e:
        raise ConfigInvalid(f"Could not load TLS certificate {cert_path}: {e}") from e
    return context


class ListenerManager:
    """Owns the active listener generation.

    At most one generation is accepting at any time: ``start`` refuses to
    bind while the active generation still accepts.
    """

    def __init__(self) -> None:
        self.active: Optional[Generation] = None

    async def start(self, target: AppTarget, config: "RuntimeConfig") -> Generation:
        """Bind a new generation for ``target``.

        Raises:
            CertificateMissing: Secure mode and a certificate file is absent.
            BindFailure: The socket failed, or the application's startup
                failed or outlasted ``config.startup_timeout``.
        """
        if self.active is not None and self.active.accepting:
            raise RuntimeError(f"Generation {self.active.id} is still accepting")

        ssl_context = None
        if config.secure:
            ssl_context = load_ssl_context(config.cert_path, config.key_path)

        generation = Generation(target, host=config.host, port=config.port)
        try:
            if isinstance(target, SelfListening):
                await self._listen_self(generation, config.startup_timeout)
            else:
                await self._listen_asgi(generation, config, ssl_context)
        except OSError as e:
            await self._shutdown_lifespan(generation)
            generation.state = GenerationState.CLOSED
            generation._closed.set()
            raise BindFailure(f"Could not listen on {config.host}:{config.port}: {e}") from e

        generation.state = GenerationState.ACCEPTING
        self.active = generation
        scheme = "HTTPS" if config.secure else "HTTP"
        logger.info(
            "{} server started on port {} (generation {})",
            scheme, generation.bound_port, generation.id,
        )
        return generation

    async def _listen_asgi(
        self,
        generation: Generation,
        config: "RuntimeConfig",
        ssl_context: Optional[ssl.SSLContext],
    ) -> None:
        assert isinstance(generation.target, HandlerOnly)
        uv_config = uvicorn.Config(
            generation.target.app,
            host=config.host,
            port=config.port,
            lifespan=config.lifespan,
            interface=config.interface,
            access_log=config.access_log,
            log_config=None,
        )
        uv_config.load()

        lifespan = uv_config.lifespan_class(uv_config)
        generation._lifespan = lifespan
        try:
            await asyncio.wait_for(lifespan.startup(), timeout=config.startup_timeout)
        except asyncio.TimeoutError:
            await self._shutdown_lifespan(generation)
            raise BindFailure(
                f"Application startup did not finish within {config.startup_timeout}s"
            ) from None
        if lifespan.should_exit:
            await self._shutdown_lifespan(generation)
            raise BindFailure("Application startup failed")

        server_state = ServerState()
        server_state.default_headers = list(uv_config.encoded_headers)
        app_state = getattr(lifespan, "state", {})
        protocol_class = uv_config.http_protocol_class

        def create_protocol() -> asyncio.Protocol:
            inner = protocol_class(config=uv_config, server_state=server_state, app_state=app_state)
            return _TrackedProtocol(inner, generation)

        loop = asyncio.get_running_loop()
        generation._server = await loop.create_server(
            create_protocol,
            host=config.host,
            port=config.port,
            ssl=ssl_context,
            backlog=uv_config.backlog,
        )

    async def _listen_self(self, generation: Generation, timeout: float) -> None:
        assert isinstance(generation.target, SelfListening)

        def ready(*_args: Any) -> None:
            logger.debug("Generation {} reported ready", generation.id)

        handle = generation.target.server.listen(generation.port, ready)
        if inspect.isawaitable(handle):
            try:
                handle = await asyncio.wait_for(handle, timeout=timeout)
            except asyncio.TimeoutError:
                raise BindFailure(f"listen() did not finish within {timeout}s") from None
        if handle is None or not callable(getattr(handle, "close", None)):
            raise BindFailure("listen() must return a server handle with close()")
        generation._server = handle

    async def shutdown(self, generation: Optional[Generation], deadline: float) -> None:
        """Drain ``generation``, forcing it closed once ``deadline`` seconds pass.

        Returns immediately for a generation that is already closed. On
        return the generation's connection set is empty.

        Raises:
            ShutdownFatal: The listener did not close even after forcing.
        """
        if generation is None or generation.state is GenerationState.CLOSED:
            return
        if generation.state is GenerationState.DRAINING:
            await generation.wait_closed()
            return

        generation.state = GenerationState.DRAINING
        logger.info("Stopping server (generation {})...", generation.id)
        try:
            generation._server.close()
            for connection in list(generation.connections):
                # uvicorn closes idle keep-alive connections and ends in-flight ones after the response
                graceful = getattr(connection.protocol, "shutdown", None)
                if callable(graceful):
                    try:
                        graceful()
                    except Exception as e:
                        logger.debug("Graceful close of a connection failed: {}", e)

            forced = False
            try:
                await self._drain(generation, deadline)
            except ShutdownTimeout as e:
                logger.warning("{}, forcing close", e)
                forced = True
                await self._force_close(generation)

            await self._await_server_closed(generation, forced)
            await self._shutdown_lifespan(generation)
        finally:
            generation.connections.clear()
            generation.state = GenerationState.CLOSED
            generation._closed.set()
            if self.active is generation:
                self.active = None

        logger.info("Server closed (generation {})", generation.id)

    async def _drain(self, generation: Generation, deadline: float) -> None:
        waiters = [generation._drained.wait()]
        wait_closed = getattr(generation._server, "wait_closed", None)
        if callable(wait_closed):
            waiters.append(wait_closed())
        try:
            await asyncio.wait_for(asyncio.gather(*waiters), timeout=deadline)
        except asyncio.TimeoutError:
            raise ShutdownTimeout(
                f"Graceful shutdown of generation {generation.id} timed out after {deadline}s"
            ) from None

    async def _force_close(self, generation: Generation) -> None:
        remaining = list(generation.connections)
        if remaining:
            logger.warning("Forcibly closing {} active connections", len(remaining))
            generation.forced_count += len(remaining)
            for connection in remaining:
                connection.transport.close()
            try:
                await asyncio.wait_for(generation._drained.wait(), timeout=LINGER_SECONDS)
            except asyncio.TimeoutError:
                pass
            for connection in list(generation.connections):
                connection.transport.abort()
            generation.connections.clear()
            generation._drained.set()

        # Self-listening servers own their connections; asyncio >= 3.13 can abort them
        abort_clients = getattr(generation._server, "abort_clients", None)
        if callable(abort_clients):
            abort_clients()

    async def _await_server_closed(self, generation: Generation, forced: bool) -> None:
        if not forced:
            return
        wait_closed = getattr(generation._server, "wait_closed", None)
        if not callable(wait_closed):
            return
        try:
            await asyncio.wait_for(wait_closed(), timeout=FORCE_CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            raise ShutdownFatal(
                f"Generation {generation.id} did not close within "
                f"{FORCE_CLOSE_TIMEOUT}s after forcing its connections"
            ) from None

    async def _shutdown_lifespan(self, generation: Generation) -> None:
        lifespan, generation._lifespan = generation._lifespan, None
        if lifespan is None:
            return
        try:
            await asyncio.wait_for(lifespan.shutdown(), timeout=LIFESPAN_SHUTDOWN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Application shutdown handlers of generation {} timed out", generation.id)
