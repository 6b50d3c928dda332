"""Shared fixtures: free ports, throwaway application directories, HTTP helpers."""

import asyncio
import os
import socket
import sys
import uuid

import pytest

from hot_keeper import keeper
from hot_keeper.config import Settings

ASGI_APP_TEMPLATE = '''
import asyncio

from hot_keeper import keep, kept

MESSAGE = {message!r}


async def app(scope, receive, send):
    if scope["type"] != "http":
        return
    if scope["path"] == "/slow":
        await kept("release").wait()
    counter = kept("counter", 0)
    keep("counter", counter + 1)
    body = f"{{MESSAGE}} {{counter}}".encode()
    await send({{
        "type": "http.response.start",
        "status": 200,
        "headers": [(b"content-type", b"text/plain"), (b"content-length", str(len(body)).encode())],
    }})
    await send({{"type": "http.response.body", "body": body}})
'''


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def http_get(port: int, path: str = "/") -> str:
    """GET ``path`` with ``Connection: close`` and return the raw response."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(f"GET {path} HTTP/1.1\r\nHost: localhost\r\nConnection: close\r\n\r\n".encode())
    await writer.drain()
    data = await asyncio.wait_for(reader.read(), timeout=5)
    writer.close()
    return data.decode()


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep HOT_KEEPER_* variables from the developer's shell out of the tests."""
    for name in list(os.environ):
        if name.startswith("HOT_KEEPER_"):
            monkeypatch.delenv(name)


@pytest.fixture(autouse=True)
def restore_keeper_store():
    saved = dict(keeper._store)
    yield
    keeper._store.clear()
    keeper._store.update(saved)


@pytest.fixture
def app_dir(tmp_path, monkeypatch):
    """Directory for generated entry modules; forgets them after the test."""
    # Rewrites within one second must not be served from a cached .pyc
    monkeypatch.setattr(sys, "dont_write_bytecode", True)
    saved_path = list(sys.path)
    yield tmp_path
    sys.path[:] = saved_path
    root = os.path.realpath(tmp_path)
    for name, module in list(sys.modules.items()):
        path = getattr(module, "__file__", None)
        if path and os.path.realpath(path).startswith(root):
            sys.modules.pop(name, None)


@pytest.fixture
def write_app(app_dir):
    """Write an ASGI entry module answering ``MESSAGE <counter>``; returns its path."""
    name = f"app_{uuid.uuid4().hex[:8]}.py"

    def _write(message: str = "hello", source: str | None = None):
        entry = app_dir / name
        entry.write_text(source if source is not None else ASGI_APP_TEMPLATE.format(message=message))
        return entry

    return _write


@pytest.fixture
def port():
    return free_port()


@pytest.fixture
def make_config(app_dir, port):
    """Resolve Settings for an entry file under ``app_dir``."""

    def _make(entry, **overrides):
        values = {
            "port": port,
            "watch": [str(app_dir)],
            "lifespan": "off",
            "restart_timeout": 2.0,
            "cleanup_timeout": 2.0,
        }
        values.update(overrides)
        return Settings(**values).resolve(str(entry), cwd=app_dir)

    return _make
