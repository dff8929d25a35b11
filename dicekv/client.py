#!/usr/bin/env python3
"""
DiceKV Client

A small blocking RESP client plus an interactive shell for manually
testing the DiceKV server.

Usage:
    dicekv-cli                   # Connect to localhost:7379
    dicekv-cli --host 1.2.3.4    # Connect to specific host
    dicekv-cli --port 8080       # Connect to specific port

    from dicekv.client import DiceClient
    with DiceClient("localhost", 7379) as client:
        client.execute("SET", "key", "value")   # 'OK'
        client.execute("GET", "key")            # b'value'
"""

import argparse
import shlex
import socket
import sys
from typing import Any, Optional

from .protocol.resp import IncompleteFrame, RespError, decode, encode_command

# Enable command history with arrow keys (works on Unix systems)
try:
    import readline  # noqa: F401
except ImportError:
    pass  # readline not available on Windows by default


class DiceClient:
    """
    Simple blocking TCP client for DiceKV.

    Replies are decoded with the RESP decoder: simple strings come back
    as str, bulk strings as bytes, nil as None and errors as RespError
    values (they are not raised).
    """

    def __init__(self, host: str = "localhost", port: int = 7379, timeout: float = 5.0):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.socket: Optional[socket.socket] = None
        self._buffer = bytearray()

    def connect(self) -> None:
        """Connect to the server."""
        self.socket = socket.create_connection((self.host, self.port), timeout=self.timeout)
        self._buffer.clear()

    def disconnect(self) -> None:
        """Disconnect from the server."""
        if self.socket:
            try:
                self.socket.close()
            finally:
                self.socket = None

    @property
    def connected(self) -> bool:
        return self.socket is not None

    def execute(self, *args: Any) -> Any:
        """
        Send one command and return its decoded reply.

        Raises:
            ConnectionError: If not connected or the server closed the connection
            socket.timeout: If no reply arrives within the timeout
        """
        if not self.socket:
            raise ConnectionError("not connected")

        self.socket.sendall(encode_command(*args))
        return self.read_reply()

    def read_reply(self) -> Any:
        """Read exactly one reply frame from the connection."""
        while True:
            try:
                value, consumed = decode(self._buffer)
            except IncompleteFrame:
                chunk = self.socket.recv(4096)
                if not chunk:
                    raise ConnectionError("connection closed by server")
                self._buffer.extend(chunk)
                continue

            del self._buffer[:consumed]
            return value

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()


def format_reply(value: Any, indent: int = 0) -> str:
    """Render a decoded reply the way redis-cli does."""
    pad = " " * indent
    if value is None:
        return f"{pad}(nil)"
    if isinstance(value, RespError):
        return f"{pad}(error) {value.message}"
    if isinstance(value, bool):
        return f"{pad}(integer) {int(value)}"
    if isinstance(value, int):
        return f"{pad}(integer) {value}"
    if isinstance(value, (bytes, bytearray)):
        return f'{pad}"{bytes(value).decode("utf-8", errors="backslashreplace")}"'
    if isinstance(value, (list, set)):
        if not value:
            return f"{pad}(empty array)"
        return "\n".join(
            f"{pad}{i}) {format_reply(item).lstrip()}" for i, item in enumerate(value, start=1)
        )
    return f"{pad}{value}"


def print_help():
    """Print help message."""
    print("""
DiceKV Commands:
----------------
  SET <key> <value> [EX s|PX ms] [NX|XX]   Store a value
  GET <key>                                Retrieve a value
  DEL <key> [key ...]                      Delete keys
  EXISTS <key> [key ...]                   Count existing keys
  EXPIRE <key> <seconds>                   Set a timeout
  TTL <key>                                Remaining time to live
  INCR / DECR <key>                        Increment / decrement an integer
  KEYS <pattern>                           List keys matching a glob
  PING / ECHO / DBSIZE / FLUSHDB / INFO
  QUIT                                     Close connection and exit

Client Commands:
----------------
  help                      Show this help message
  exit                      Exit the client
  reconnect                 Reconnect to the server
  status                    Show connection status

Quote arguments containing spaces: SET greeting "hello world"
""")


def main():
    parser = argparse.ArgumentParser(
        description="Interactive client for DiceKV"
    )
    parser.add_argument(
        "--host",
        type=str,
        default="localhost",
        help="Server host (default: localhost)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=7379,
        help="Server port (default: 7379)"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=5.0,
        help="Socket timeout in seconds (default: 5.0)"
    )

    args = parser.parse_args()

    print(f"Connecting to {args.host}:{args.port}...")

    client = DiceClient(args.host, args.port, args.timeout)
    try:
        client.connect()
    except OSError as e:
        print(f"Connection error: {e}")
        print(f"  Try: dicekv --port {args.port}")
        sys.exit(1)

    print("Connected! Type 'help' for commands.\n")

    try:
        while True:
            try:
                line = input(f"{args.host}:{args.port}> ").strip()
            except EOFError:
                print("\nGoodbye!")
                break

            if not line:
                continue

            lower_cmd = line.lower()

            if lower_cmd == "help":
                print_help()
                continue

            if lower_cmd == "exit":
                print("Goodbye!")
                break

            if lower_cmd == "reconnect":
                client.disconnect()
                try:
                    client.connect()
                    print("Reconnected!")
                except OSError as e:
                    print(f"Reconnection failed: {e}")
                continue

            if lower_cmd == "status":
                status = "Connected" if client.connected else "Disconnected"
                print(f"Status: {status}")
                print(f"Server: {args.host}:{args.port}")
                continue

            try:
                words = shlex.split(line)
            except ValueError as e:
                print(f"Invalid input: {e}")
                continue

            try:
                reply = client.execute(*words)
            except (ConnectionError, OSError) as e:
                print(f"ERROR: {e}")
                client.disconnect()
                continue

            print(format_reply(reply))

            if words[0].upper() == "QUIT":
                print("Goodbye!")
                break

    except KeyboardInterrupt:
        print("\n\nInterrupted. Goodbye!")
    finally:
        client.disconnect()


if __name__ == "__main__":
    main()
