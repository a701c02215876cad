"""
Pytest Configuration and Fixtures

This module provides shared fixtures and configuration for all tests.
"""

import asyncio
import socket
import threading
import pytest
import pytest_asyncio
from contextlib import closing
from typing import AsyncGenerator, Generator

from kvlab.client import KVClient
from kvlab.exceptions import CommandError
from kvlab.protocol.parser import ProtocolParser
from kvlab.network.tcp_server import KVServer
from kvlab.store.store import KVStore


def find_free_port() -> int:
    """Find an available port for testing."""
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(('', 0))
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return s.getsockname()[1]


# ============================================================================
# KVStore Fixtures
# ============================================================================

@pytest.fixture
def store() -> KVStore:
    """Create a fresh KVStore instance."""
    return KVStore()


# ============================================================================
# Protocol Fixtures
# ============================================================================

@pytest.fixture
def parser() -> ProtocolParser:
    """Create a ProtocolParser instance."""
    return ProtocolParser()


# ============================================================================
# Async Server Fixtures
# ============================================================================

@pytest.fixture
def server_port() -> int:
    """Get a free port for server testing."""
    return find_free_port()


@pytest_asyncio.fixture
async def server(server_port: int) -> AsyncGenerator[KVServer, None]:
    """
    Create and start a server instance for testing.

    This fixture:
    1. Creates a KVServer on a random free port
    2. Starts it in a background task
    3. Yields the server for testing
    4. Cleans up after the test
    """
    srv = KVServer(host='127.0.0.1', port=server_port, cleanup_interval=0.1)

    # Start server in background task
    server_task = asyncio.create_task(srv.start())

    # Wait for server to be ready
    await asyncio.sleep(0.1)

    yield srv

    # Cleanup
    await srv.stop()
    server_task.cancel()
    try:
        await server_task
    except asyncio.CancelledError:
        pass


class AsyncClient:
    """
    Raw RESP client for testing server interactions.

    Sends commands as RESP arrays and decodes one reply per call, keeping
    the wire format visible in tests.

    Usage:
        async with AsyncClient('127.0.0.1', 6379) as client:
            reply = await client.send_command("SET", "key", "value")
            assert reply == "OK"
    """

    def __init__(self, host: str, port: int):
        self.host = host
        self.port = port
        self.reader = None
        self.writer = None
        self.parser = ProtocolParser()

    async def connect(self) -> None:
        """Establish connection to server."""
        self.reader, self.writer = await asyncio.open_connection(
            self.host, self.port
        )

    async def disconnect(self) -> None:
        """Close connection to server."""
        if self.writer:
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def send_raw(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()

    async def send_command(self, *args):
        """
        Send a command and receive the reply.

        Returns:
            str for status replies, bytes/None for bulk strings, int, list,
            or a CommandError instance for error replies
        """
        await self.send_raw(self.parser.encode_command(*args))
        return await self.read_reply()

    async def read_reply(self):
        """Decode one reply from the stream."""
        line = await self.reader.readline()
        if not line:
            raise ConnectionResetError("server closed the connection")
        prefix, body = line[:1], line[1:-2]
        if prefix == b"+":
            return body.decode()
        if prefix == b"-":
            return CommandError(body.decode())
        if prefix == b":":
            return int(body)
        if prefix == b"$":
            size = int(body)
            if size < 0:
                return None
            data = await self.reader.readexactly(size + 2)
            return data[:-2]
        if prefix == b"*":
            count = int(body)
            if count < 0:
                return None
            return [await self.read_reply() for _ in range(count)]
        raise AssertionError(f"unexpected reply line {line!r}")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()


@pytest.fixture
def client_factory(server_port: int):
    """
    Factory fixture to create raw test clients.

    Usage:
        async def test_something(server, client_factory):
            async with client_factory() as client:
                reply = await client.send_command("GET", "key")
    """
    def factory() -> AsyncClient:
        return AsyncClient('127.0.0.1', server_port)
    return factory


@pytest_asyncio.fixture
async def client_reader_writer(
    server: KVServer,
    server_port: int
) -> AsyncGenerator[tuple, None]:
    """
    Create a raw reader/writer pair connected to the server.

    Useful for low-level protocol testing.
    """
    reader, writer = await asyncio.open_connection('127.0.0.1', server_port)

    yield reader, writer

    writer.close()
    await writer.wait_closed()


# ============================================================================
# Threaded Server Fixtures (for the blocking client)
# ============================================================================

class ServerThread:
    """
    Runs a KVServer on its own event loop in a background thread so that
    synchronous client code can talk to it from the test thread.
    """

    def __init__(self, port: int):
        self.server = KVServer(host='127.0.0.1', port=port, cleanup_interval=0.1)
        self.loop = asyncio.new_event_loop()
        self.ready = threading.Event()
        self.thread = threading.Thread(target=self._run, name="kvlab-test-server", daemon=True)
        self._task = None

    @property
    def port(self) -> int:
        return self.server.port

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_until_complete(self.server.listen())
        self._task = self.loop.create_task(self.server.start())
        self.ready.set()
        self.loop.run_until_complete(self._task)
        # stop() may still be waiting on connections it cancelled
        leftover = asyncio.all_tasks(self.loop)
        if leftover:
            self.loop.run_until_complete(asyncio.wait(leftover, timeout=5))
        self.loop.run_until_complete(self.loop.shutdown_asyncgens())

    def start(self) -> "ServerThread":
        self.thread.start()
        if not self.ready.wait(timeout=5):
            raise RuntimeError("test server did not start")
        return self

    def stop(self) -> None:
        """Stop the server and close its loop. Safe to call more than once."""
        if self.loop.is_closed():
            return
        if self.thread.is_alive():
            # server.stop() ends start(), which lets _run return
            future = asyncio.run_coroutine_threadsafe(self.server.stop(), self.loop)
            future.result(timeout=5)
            self.thread.join(timeout=5)
        if not self.thread.is_alive():
            self.loop.close()


@pytest.fixture
def server_thread(server_port: int) -> Generator[ServerThread, None, None]:
    """A running server on a background thread."""
    srv = ServerThread(server_port).start()
    yield srv
    srv.stop()


@pytest.fixture
def client(server_thread: ServerThread) -> Generator[KVClient, None, None]:
    """A blocking client connected to the threaded server."""
    kv = KVClient(host='127.0.0.1', port=server_thread.port, socket_timeout=5.0)
    yield kv
    kv.close()


@pytest.fixture
def client_for(server_thread: ServerThread):
    """
    Factory for extra clients on the threaded server.

    Clients created through the factory are closed after the test.
    """
    created = []

    def factory(**options) -> KVClient:
        options.setdefault("socket_timeout", 5.0)
        kv = KVClient(host='127.0.0.1', port=server_thread.port, **options)
        created.append(kv)
        return kv

    yield factory
    for kv in created:
        kv.close()


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


# Configure asyncio mode for pytest-asyncio
pytest_plugins = ['pytest_asyncio']
