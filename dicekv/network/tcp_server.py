"""
Async TCP Server Module

This module implements the connection acceptor for DiceKV.

asyncio.start_server() owns the listening socket and runs the accept
loop; every accepted connection is handed to handle_client() in its own
task, so a client blocked on I/O never delays accepting the next one or
serving the others. Transient accept failures (aborted handshakes,
EMFILE/ENFILE/ENOBUFS/ENOMEM) are logged by the event loop and
accepting resumes after a short back-off; only closing the listener
ends the loop.
"""

import asyncio
import logging
import threading
from asyncio import StreamReader, StreamWriter
from typing import Any, Dict, Optional, Set

from ..cache.store import KVStore
from ..config.settings import settings
from ..core.dispatcher import CommandDispatcher
from .session import ClientSession

logger = logging.getLogger(__name__)


class BindError(Exception):
    """The server could not bind its listening socket."""


class ConnectionCounter:
    """
    Live-connection counter shared by all sessions.

    Used for logging and INFO only; it never limits admissions.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._live = 0
        self._total = 0

    def increment(self) -> int:
        """Record an accepted connection and return the new live count."""
        with self._lock:
            self._live += 1
            self._total += 1
            return self._live

    def decrement(self) -> int:
        """Record a closed connection and return the new live count."""
        with self._lock:
            self._live -= 1
            return self._live

    @property
    def live(self) -> int:
        return self._live

    @property
    def total(self) -> int:
        return self._total


class DiceServer:
    """
    Asynchronous TCP server for DiceKV.

    This server handles multiple concurrent clients using asyncio.
    Each client connection is served by its own ClientSession task,
    and all sessions share one CommandDispatcher and KVStore.

    Features:
    - Non-blocking I/O with asyncio
    - Persistent connections (many commands per connection, pipelining)
    - Idle-connection timeout
    - Background expiry of keys with a TTL
    - Graceful shutdown: stop accepting, drain sessions, then cancel

    Usage:
        server = DiceServer(host='0.0.0.0', port=7379)
        await server.start()  # Runs until stop() is called

    Attributes:
        host: Server bind address (e.g., '0.0.0.0')
        port: Server port number (e.g., 7379)
        store: The KVStore instance shared by all connections
        dispatcher: The CommandDispatcher shared by all connections
        connections: Live-connection counter
    """

    def __init__(
            self,
            host: str = None,
            port: int = None,
            store: KVStore = None,
            idle_timeout: float = None,
            cleanup_interval: float = None,
    ):
        """
        Initialize the server.

        Args:
            host: Bind address (default from settings)
            port: Port number (default from settings, 0 picks a free port)
            store: KVStore instance (creates new one if not provided)
            idle_timeout: Seconds before an idle connection is closed
                (default from settings, 0 disables)
            cleanup_interval: Seconds between active expiry runs
                (default from settings, 0 disables)
        """
        self.host = host if host is not None else settings.HOST
        self.port = port if port is not None else settings.PORT
        self.store = store if store is not None else KVStore()
        self.idle_timeout = idle_timeout if idle_timeout is not None else settings.CONNECTION_TIMEOUT
        self.cleanup_interval = (
            cleanup_interval if cleanup_interval is not None else settings.CLEANUP_INTERVAL
        )
        self.dispatcher = CommandDispatcher(self.store, info_provider=self._info)
        self.connections = ConnectionCounter()

        # Server state
        self._server: Optional[asyncio.AbstractServer] = None
        self._sweeper: Optional[asyncio.Task] = None
        self._sessions: Set[ClientSession] = set()
        self._running = False

    async def handle_client(
            self,
            reader: StreamReader,
            writer: StreamWriter
    ) -> None:
        """
        Serve a single client connection.

        Called by asyncio in a new task for every accepted connection.
        The live count is incremented on entry and decremented exactly
        once when the session ends, however it ends.
        """
        session = ClientSession(reader, writer, self.dispatcher, idle_timeout=self.idle_timeout)
        self._sessions.add(session)
        live = self.connections.increment()
        logger.info(f"Client connected: {session.addr} concurrent clients: {live}")

        try:
            await session.run()
        finally:
            self._sessions.discard(session)
            live = self.connections.decrement()
            logger.info(f"Client disconnected: {session.addr} concurrent clients: {live}")

    async def bind(self) -> None:
        """
        Bind the listening socket.

        Raises:
            BindError: If the address is invalid or already in use
        """
        try:
            self._server = await asyncio.start_server(
                self.handle_client,
                self.host,
                self.port,
                reuse_address=True,
            )
        except OSError as exc:
            raise BindError(f"cannot listen on {self.host}:{self.port}: {exc}") from exc

        sockets = self._server.sockets or []
        if sockets and not self.port:
            self.port = sockets[0].getsockname()[1]

        addrs = ', '.join(str(sock.getsockname()) for sock in sockets)
        logger.info(f"Serving on {addrs}")

    async def start(self) -> None:
        """
        Start the server and accept connections until stopped.

        Example:
            server = DiceServer(port=7379)
            asyncio.run(server.start())

        Raises:
            BindError: If the listening socket cannot be bound
        """
        if self._running:
            return

        if self._server is None:
            await self.bind()
        self._running = True

        if self.cleanup_interval and self.cleanup_interval > 0:
            self._sweeper = asyncio.create_task(self._expire_keys())

        try:
            await self._server.serve_forever()
        except asyncio.CancelledError:
            # Expected on stop() and fixture cleanup
            logger.debug("Accept loop stopped")
        finally:
            self._running = False

    async def stop(self, grace: float = None) -> None:
        """
        Stop the server gracefully.

        Stops accepting, asks every session to finish, waits up to grace
        seconds for them, then cancels whatever is still running.

        Args:
            grace: Seconds to wait for sessions (default from settings)
        """
        if self._server is None:
            return

        grace = grace if grace is not None else settings.SHUTDOWN_GRACE
        server, self._server = self._server, None
        server.close()

        sessions = list(self._sessions)
        logger.info(f"Shutting down, draining {len(sessions)} sessions")
        for session in sessions:
            session.shutdown()

        tasks = [s.task for s in sessions if s.task is not None]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=grace)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"Cancelled {len(pending)} sessions still running after {grace}s")
                await asyncio.gather(*pending, return_exceptions=True)

        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None

        try:
            await server.wait_closed()
        finally:
            self._running = False

    def is_running(self) -> bool:
        """Check if the server is currently running."""
        return self._running

    def get_stats(self) -> Dict[str, Any]:
        """
        Get server statistics.

        Returns:
            Dictionary with server stats including connection counts,
            command counts, and store statistics.
        """
        return {
            "running": self._running,
            "host": self.host,
            "port": self.port,
            "connected_clients": self.connections.live,
            "total_connections": self.connections.total,
            "total_commands": self.dispatcher.total_commands,
            "store_stats": self.store.get_stats(),
        }

    def _info(self) -> Dict[str, Dict[str, Any]]:
        return {
            "server": {"tcp_port": self.port},
            "clients": {"connected_clients": self.connections.live},
            "stats": {"total_connections_received": self.connections.total},
        }

    async def _expire_keys(self) -> None:
        """Periodically drop expired keys that were never read again."""
        while True:
            await asyncio.sleep(self.cleanup_interval)
            removed = self.store.cleanup_expired()
            if removed:
                logger.debug(f"Expired {removed} keys")


async def run_server(host: str = None, port: int = None) -> None:
    """
    Convenience function to create and run the server.

    Usage:
        asyncio.run(run_server(port=7379))
    """
    server = DiceServer(host=host, port=port)

    try:
        await server.start()
    except asyncio.CancelledError:
        logger.info("Server shutdown requested")
    finally:
        await server.stop()
