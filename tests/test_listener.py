"""Tests for listener generations: binding, tracking, draining and forcing."""

import asyncio
import socket
import time
from unittest.mock import patch

import pytest

from conftest import free_port, http_get
from hot_keeper.core.app_loader import HandlerOnly, SelfListening
from hot_keeper.core.errors import BindFailure, CertificateMissing
from hot_keeper.core.listener import (
    LINGER_SECONDS,
    Generation,
    GenerationState,
    ListenerManager,
    _TrackedProtocol,
    load_ssl_context,
)


async def hello_app(scope, receive, send):
    if scope["type"] != "http":
        return
    await send({
        "type": "http.response.start",
        "status": 200,
        "headers": [(b"content-type", b"text/plain"), (b"content-length", b"5")],
    })
    await send({"type": "http.response.body", "body": b"hello"})


class EchoServer:
    """Application that binds its own socket."""

    def __init__(self):
        self.ready_called = False

    async def _handle(self, reader, writer):
        writer.write(await reader.readline())
        await writer.drain()
        writer.close()

    def listen(self, port, ready):
        return self._start(port, ready)

    async def _start(self, port, ready):
        server = await asyncio.start_server(self._handle, "127.0.0.1", port)
        self.ready_called = True
        ready()
        return server


@pytest.fixture
def config(write_app, make_config):
    return make_config(write_app("unused"))


class TestStart:
    @pytest.mark.asyncio
    async def test_serves_requests(self, config):
        manager = ListenerManager()
        generation = await manager.start(HandlerOnly(hello_app), config)
        try:
            assert generation.state is GenerationState.ACCEPTING
            assert manager.active is generation
            response = await http_get(generation.bound_port)
            assert response.startswith("HTTP/1.1 200")
            assert response.endswith("hello")
        finally:
            await manager.shutdown(generation, 1.0)

    @pytest.mark.asyncio
    async def test_plain_start_never_touches_certificates(self, config):
        manager = ListenerManager()
        with patch("hot_keeper.core.listener.load_ssl_context") as mock_ssl:
            generation = await manager.start(HandlerOnly(hello_app), config)
        try:
            mock_ssl.assert_not_called()
        finally:
            await manager.shutdown(generation, 1.0)

    @pytest.mark.asyncio
    async def test_missing_key_fails_before_binding(self, write_app, make_config, app_dir, port):
        (app_dir / "cert.pem").write_text("not really a cert")
        config = make_config(
            write_app(),
            secure=True,
            certs={"cert": "cert.pem", "key": "missing-key.pem"},
        )
        manager = ListenerManager()
        with pytest.raises(CertificateMissing, match="SSL certificates not found"):
            await manager.start(HandlerOnly(hello_app), config)
        assert manager.active is None

        # Port was never bound
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", port))

    @pytest.mark.asyncio
    async def test_port_in_use_is_bind_failure(self, config, port):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", port))
        blocker.listen()
        try:
            manager = ListenerManager()
            with pytest.raises(BindFailure):
                await manager.start(HandlerOnly(hello_app), config)
            assert manager.active is None
        finally:
            blocker.close()

    @pytest.mark.asyncio
    async def test_refuses_second_accepting_generation(self, config):
        manager = ListenerManager()
        generation = await manager.start(HandlerOnly(hello_app), config)
        try:
            with pytest.raises(RuntimeError, match="still accepting"):
                await manager.start(HandlerOnly(hello_app), config)
        finally:
            await manager.shutdown(generation, 1.0)

    @pytest.mark.asyncio
    async def test_generation_ids_increase(self, config):
        manager = ListenerManager()
        first = await manager.start(HandlerOnly(hello_app), config)
        await manager.shutdown(first, 1.0)
        second = await manager.start(HandlerOnly(hello_app), config)
        await manager.shutdown(second, 1.0)
        assert second.id > first.id

    @pytest.mark.asyncio
    async def test_self_listening_app_owns_socket(self, config):
        server = EchoServer()
        manager = ListenerManager()
        generation = await manager.start(SelfListening(server), config)
        try:
            assert server.ready_called
            reader, writer = await asyncio.open_connection("127.0.0.1", config.port)
            writer.write(b"ping\n")
            assert await reader.readline() == b"ping\n"
            writer.close()
        finally:
            await manager.shutdown(generation, 1.0)

        assert generation.state is GenerationState.CLOSED
        with pytest.raises(OSError):
            await asyncio.open_connection("127.0.0.1", config.port)


class TestStartupTimeout:
    @pytest.mark.asyncio
    async def test_hanging_listen_is_bind_failure(self, write_app, make_config):
        class HangingServer:
            async def listen(self, port, ready):
                await asyncio.Event().wait()

        config = make_config(write_app(), startup_timeout=0.2)
        manager = ListenerManager()

        started = time.monotonic()
        with pytest.raises(BindFailure, match="did not finish"):
            await manager.start(SelfListening(HangingServer()), config)
        assert time.monotonic() - started < 1.0
        assert manager.active is None

    @pytest.mark.asyncio
    async def test_hanging_lifespan_startup_is_bind_failure(self, write_app, make_config):
        from contextlib import asynccontextmanager

        from starlette.applications import Starlette

        @asynccontextmanager
        async def lifespan(app):
            await asyncio.Event().wait()
            yield

        config = make_config(write_app(), lifespan="on", startup_timeout=0.2)
        manager = ListenerManager()

        with pytest.raises(BindFailure, match="startup did not finish"):
            await manager.start(HandlerOnly(Starlette(lifespan=lifespan)), config)
        assert manager.active is None

        # Port was never bound
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", config.port))


class RecordingProtocol(asyncio.Protocol):
    def __init__(self):
        self.events = []

    def connection_made(self, transport):
        self.events.append("made")

    def data_received(self, data):
        self.events.append(data)

    def connection_lost(self, exc):
        self.events.append("lost")


class FakeTransport:
    def set_protocol(self, protocol):
        raise AssertionError("tracked transports must not swap out the wrapper")


class TestConnectionTracking:
    def test_upgraded_connection_still_tracked(self):
        """A websocket upgrade swaps the inner protocol; its close still untracks."""
        generation = Generation(HandlerOnly(hello_app), host="127.0.0.1", port=0)
        http_protocol = RecordingProtocol()
        ws_protocol = RecordingProtocol()
        tracked = _TrackedProtocol(http_protocol, generation)
        transport = FakeTransport()

        tracked.connection_made(transport)
        assert len(generation.connections) == 1

        transport.set_protocol(ws_protocol)
        (connection,) = generation.connections
        assert connection.protocol is ws_protocol

        tracked.data_received(b"frame")
        tracked.connection_lost(None)

        assert ws_protocol.events == [b"frame", "lost"]
        assert http_protocol.events == ["made"]
        assert generation.connections == set()
        assert generation._drained.is_set()
    @pytest.mark.asyncio
    async def test_connection_added_and_removed(self, config):
        manager = ListenerManager()
        generation = await manager.start(HandlerOnly(hello_app), config)
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", generation.bound_port)
            await asyncio.sleep(0.05)
            assert len(generation.connections) == 1

            writer.close()
            await writer.wait_closed()
            for _ in range(100):
                if not generation.connections:
                    break
                await asyncio.sleep(0.01)
            assert generation.connections == set()
        finally:
            await manager.shutdown(generation, 1.0)


class TestShutdown:
    @pytest.mark.asyncio
    async def test_idle_keepalive_connections_drain_naturally(self, config):
        manager = ListenerManager()
        generation = await manager.start(HandlerOnly(hello_app), config)

        reader, writer = await asyncio.open_connection("127.0.0.1", generation.bound_port)
        writer.write(b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n")
        await writer.drain()
        await reader.readuntil(b"\r\n\r\n")
        assert await reader.readexactly(5) == b"hello"
        assert len(generation.connections) == 1

        started = time.monotonic()
        await manager.shutdown(generation, 5.0)
        assert time.monotonic() - started < 1.0
        assert generation.forced_count == 0
        assert generation.connections == set()
        assert generation.state is GenerationState.CLOSED
        assert manager.active is None
        writer.close()

    @pytest.mark.asyncio
    async def test_forced_shutdown_of_200_connections(self, config):
        """In-flight requests past the deadline are destroyed, and shutdown returns."""
        release = asyncio.Event()
        arrived = asyncio.Event()
        count = 0

        async def stuck_app(scope, receive, send):
            nonlocal count
            if scope["type"] != "http":
                return
            count += 1
            if count == 200:
                arrived.set()
            await release.wait()

        manager = ListenerManager()
        generation = await manager.start(HandlerOnly(stuck_app), config)

        writers = []
        for _ in range(200):
            _, writer = await asyncio.open_connection("127.0.0.1", generation.bound_port)
            writer.write(b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n")
            writers.append(writer)
        await asyncio.wait_for(arrived.wait(), timeout=10)
        assert len(generation.connections) == 200

        started = time.monotonic()
        await manager.shutdown(generation, 0.001)
        elapsed = time.monotonic() - started

        try:
            assert generation.connections == set()
            assert generation.forced_count == 200
            assert generation.state is GenerationState.CLOSED
            assert elapsed < 0.001 + LINGER_SECONDS + 0.5
        finally:
            release.set()
            for writer in writers:
                writer.close()
            await asyncio.sleep(0.05)

    @pytest.mark.asyncio
    async def test_shutdown_of_closed_generation_is_noop(self, config):
        manager = ListenerManager()
        generation = await manager.start(HandlerOnly(hello_app), config)
        await manager.shutdown(generation, 1.0)

        started = time.monotonic()
        await manager.shutdown(generation, 1.0)
        assert time.monotonic() - started < 0.05
        assert generation.state is GenerationState.CLOSED

    @pytest.mark.asyncio
    async def test_shutdown_of_none_is_noop(self):
        await ListenerManager().shutdown(None, 1.0)

    @pytest.mark.asyncio
    async def test_port_reusable_after_shutdown(self, config):
        manager = ListenerManager()
        generation = await manager.start(HandlerOnly(hello_app), config)
        await http_get(generation.bound_port)
        await manager.shutdown(generation, 1.0)

        generation = await manager.start(HandlerOnly(hello_app), config)
        try:
            assert (await http_get(config.port)).endswith("hello")
        finally:
            await manager.shutdown(generation, 1.0)

    @pytest.mark.asyncio
    async def test_lifespan_runs_per_generation(self, write_app, make_config):
        from contextlib import asynccontextmanager

        from starlette.applications import Starlette

        events = []

        @asynccontextmanager
        async def lifespan(app):
            events.append("startup")
            yield
            events.append("shutdown")

        app = Starlette(lifespan=lifespan)
        config = make_config(write_app(), lifespan="on")
        manager = ListenerManager()
        generation = await manager.start(HandlerOnly(app), config)
        assert events == ["startup"]
        await manager.shutdown(generation, 1.0)
        assert events == ["startup", "shutdown"]


class TestLoadSslContext:
    def test_missing_files(self, tmp_path):
        with pytest.raises(CertificateMissing):
            load_ssl_context(tmp_path / "cert.pem", tmp_path / "key.pem")

    def test_none_paths(self):
        with pytest.raises(CertificateMissing):
            load_ssl_context(None, None)


def test_free_port_helper_returns_bindable_port():
    port = free_port()
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", port))
