"""
Client Session Module

One ClientSession owns one client connection and runs its
read -> parse -> dispatch -> reply loop:

    CONNECTED -> READING -> DISPATCHING -> REPLYING -> READING ...

The session ends (CLOSED) on end-of-stream, an idle timeout, a read or
write error, a QUIT command, or a server shutdown. Protocol and command
errors are answered with an error reply and never end the session.
"""

import asyncio
import logging
from asyncio import StreamReader, StreamWriter
from enum import Enum
from typing import List, Optional

from ..config.settings import settings
from ..core.dispatcher import CommandDispatcher
from ..protocol.parser import ProtocolParser
from ..protocol.resp import ProtocolError, RespError

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Lifecycle states of a client session."""
    CONNECTED = "connected"
    READING = "reading"
    DISPATCHING = "dispatching"
    REPLYING = "replying"
    CLOSED = "closed"


class ClientSession:
    """
    Read-parse-dispatch-reply loop for a single connection.

    Every chunk read from the socket is fed to a per-connection
    ProtocolParser; all commands completed by that chunk are
    dispatched in order and their replies written back together,
    so replies always match requests one to one and in order.

    Attributes:
        addr: The peer address, used for logging
        state: Current SessionState
        commands_processed: Number of commands dispatched on this connection
    """

    def __init__(
            self,
            reader: StreamReader,
            writer: StreamWriter,
            dispatcher: CommandDispatcher,
            idle_timeout: float = None,
            read_size: int = None,
    ):
        """
        Initialize the session.

        Args:
            reader: StreamReader for the client connection
            writer: StreamWriter for the client connection
            dispatcher: Shared CommandDispatcher
            idle_timeout: Seconds without input before the connection is
                closed (default from settings, 0 disables)
            read_size: Maximum bytes per read (default from settings)
        """
        self.reader = reader
        self.writer = writer
        self.dispatcher = dispatcher
        self.idle_timeout = idle_timeout if idle_timeout is not None else settings.CONNECTION_TIMEOUT
        self.read_size = read_size if read_size is not None else settings.READ_BUFFER_SIZE
        self.parser = ProtocolParser()
        self.addr = writer.get_extra_info('peername')
        self.state = SessionState.CONNECTED
        self.commands_processed = 0

        self._closing = False
        self._task: Optional[asyncio.Task] = None

    @property
    def task(self) -> Optional[asyncio.Task]:
        """The task running this session, once run() has started."""
        return self._task

    @property
    def is_idle(self) -> bool:
        """True while the session waits for input with no command in flight."""
        return self.state in (SessionState.CONNECTED, SessionState.READING)

    async def run(self) -> None:
        """
        Serve the connection until it ends.

        The writer is always closed before this coroutine returns.
        """
        self._task = asyncio.current_task()
        try:
            await self._serve()
        except asyncio.CancelledError:
            logger.debug(f"Session cancelled: {self.addr}")
            raise
        except Exception as exc:  # Log unexpected errors but keep server alive
            logger.exception(f"Error handling client {self.addr}: {exc}")
        finally:
            self.state = SessionState.CLOSED
            await self._close_writer()

    def shutdown(self) -> None:
        """
        Ask the session to end.

        An idle session is cancelled right away; a session in the middle
        of a batch finishes writing its replies and then ends.
        """
        self._closing = True
        if self.is_idle and self._task is not None and not self._task.done():
            self._task.cancel()

    async def _serve(self) -> None:
        while not self._closing:
            self.state = SessionState.READING
            data = await self._read()
            if data is None:
                return

            self.parser.feed(data)

            self.state = SessionState.DISPATCHING
            replies, quit_requested = self._dispatch_buffered()

            if replies:
                self.state = SessionState.REPLYING
                if not await self._write(b"".join(replies)):
                    return

            if quit_requested:
                logger.debug(f"Client requested quit: {self.addr}")
                return

    async def _read(self) -> Optional[bytes]:
        """Read the next chunk; None means the session should end."""
        try:
            if self.idle_timeout and self.idle_timeout > 0:
                data = await asyncio.wait_for(self.reader.read(self.read_size), self.idle_timeout)
            else:
                data = await self.reader.read(self.read_size)
        except asyncio.TimeoutError:
            logger.info(f"Closing idle connection {self.addr} after {self.idle_timeout}s")
            return None
        except (ConnectionError, OSError) as exc:
            logger.warning(f"Read error from {self.addr}: {exc}")
            return None

        if not data:
            # End of stream
            if self.parser.buffered:
                logger.debug(f"Client {self.addr} left {self.parser.buffered} unframed bytes")
            return None
        return data

    def _dispatch_buffered(self):
        """Dispatch every complete command in the buffer; return (replies, quit)."""
        replies: List[bytes] = []
        while True:
            try:
                command = self.parser.next_command()
            except ProtocolError as exc:
                logger.debug(f"Protocol error from {self.addr}: {exc}")
                replies.append(self.parser.format_response(RespError(f"ERR {exc}")))
                continue

            if command is None:
                return replies, False

            self.commands_processed += 1
            reply = self.dispatcher.dispatch(command)
            replies.append(self.parser.format_response(reply))

            if command.name == "QUIT":
                return replies, True

    async def _write(self, payload: bytes) -> bool:
        """Write a batch of replies; False if the peer is gone."""
        try:
            self.writer.write(payload)
            await self.writer.drain()
        except (ConnectionError, OSError) as exc:
            logger.warning(f"Write to {self.addr} failed, closing session: {exc}")
            return False
        return True

    async def _close_writer(self) -> None:
        if self.writer.is_closing():
            return
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as exc:
            logger.debug(f"Error closing connection {self.addr}: {exc}")
