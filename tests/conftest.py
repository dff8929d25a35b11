"""
Pytest Configuration and Fixtures

This module provides shared fixtures and configuration for all tests.
"""

import asyncio
import socket
import pytest
import pytest_asyncio
from contextlib import closing
from typing import Any, AsyncGenerator

from dicekv.cache.store import KVStore
from dicekv.core.dispatcher import CommandDispatcher
from dicekv.network.tcp_server import DiceServer
from dicekv.protocol.parser import ProtocolParser
from dicekv.protocol.resp import IncompleteFrame, decode, encode_command


def find_free_port() -> int:
    """Find an available port for testing."""
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(('', 0))
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return s.getsockname()[1]


class FakeClock:
    """Stand-in for the time module inside dicekv.cache.store."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def time(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================================
# Store Fixtures
# ============================================================================

@pytest.fixture
def store() -> KVStore:
    """Create a fresh, unbounded KVStore instance."""
    return KVStore(max_size=0)


@pytest.fixture
def small_store() -> KVStore:
    """Create a KVStore with small capacity for eviction testing (5 keys)."""
    return KVStore(max_size=5)


@pytest.fixture
def clock(monkeypatch) -> FakeClock:
    """Freeze the store's clock; advance it with clock.advance(seconds)."""
    import dicekv.cache.store as store_module

    fake = FakeClock()
    monkeypatch.setattr(store_module, "time", fake)
    return fake


# ============================================================================
# Protocol / Dispatch Fixtures
# ============================================================================

@pytest.fixture
def parser() -> ProtocolParser:
    """Create a ProtocolParser instance."""
    return ProtocolParser()


@pytest.fixture
def dispatcher(store: KVStore) -> CommandDispatcher:
    """Create a dispatcher over the store fixture."""
    return CommandDispatcher(store)


# ============================================================================
# Server Fixtures
# ============================================================================

@pytest.fixture
def server_port() -> int:
    """Get a free port for server testing."""
    return find_free_port()


@pytest_asyncio.fixture
async def server(server_port: int) -> AsyncGenerator[DiceServer, None]:
    """
    Create and start a server instance for testing.

    This fixture:
    1. Binds a DiceServer on a random free port
    2. Runs its accept loop in a background task
    3. Yields the server for testing
    4. Stops it after the test
    """
    srv = DiceServer(host='127.0.0.1', port=server_port, idle_timeout=0, cleanup_interval=0.1)
    await srv.bind()

    server_task = asyncio.create_task(srv.start())
    await asyncio.sleep(0)

    yield srv

    # Cleanup
    await srv.stop(grace=1.0)
    server_task.cancel()
    try:
        await server_task
    except asyncio.CancelledError:
        pass


async def wait_for(predicate, timeout: float = 2.0) -> bool:
    """Poll predicate until it is true or the timeout passes."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            return False
        await asyncio.sleep(0.01)
    return True


# ============================================================================
# Client Fixtures
# ============================================================================

class AsyncClient:
    """
    Helper class for testing server interactions over RESP.

    Usage:
        async with AsyncClient('127.0.0.1', 7379) as client:
            reply = await client.send_command("SET", "key", "value")
            assert reply == "OK"
    """

    def __init__(self, host: str, port: int):
        self.host = host
        self.port = port
        self.reader = None
        self.writer = None
        self._buffer = bytearray()

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
        """Write raw bytes to the server."""
        self.writer.write(data)
        await self.writer.drain()

    async def read_reply(self, timeout: float = 2.0) -> Any:
        """Read and decode exactly one reply."""
        while True:
            try:
                value, consumed = decode(self._buffer)
            except IncompleteFrame:
                chunk = await asyncio.wait_for(self.reader.read(4096), timeout)
                if not chunk:
                    raise ConnectionError("connection closed by server")
                self._buffer.extend(chunk)
                continue

            del self._buffer[:consumed]
            return value

    async def send_command(self, *args: Any) -> Any:
        """Send a command as a RESP array and return the decoded reply."""
        await self.send_raw(encode_command(*args))
        return await self.read_reply()

    async def send_inline(self, line: str) -> Any:
        """Send an inline command line and return the decoded reply."""
        await self.send_raw(line.encode() + b"\r\n")
        return await self.read_reply()

    async def is_closed_by_server(self, timeout: float = 2.0) -> bool:
        """True if the server closes the connection within the timeout."""
        try:
            data = await asyncio.wait_for(self.reader.read(1), timeout)
        except asyncio.TimeoutError:
            return False
        except (ConnectionError, OSError):
            return True
        return data == b""

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()


@pytest.fixture
def client_factory(server_port: int):
    """
    Factory fixture to create test clients.

    Usage:
        async def test_something(server, client_factory):
            async with client_factory() as client:
                reply = await client.send_command("GET", "key")
    """
    def factory(port: int = None) -> AsyncClient:
        return AsyncClient('127.0.0.1', port or server_port)
    return factory


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


@pytest.fixture
def eventually():
    """The wait_for() polling helper, for tests that wait on server state."""
    return wait_for
