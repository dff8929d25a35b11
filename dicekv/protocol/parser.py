"""
Protocol Parser Module

This module turns the byte stream of one client connection into
complete commands.

A read from a socket may hold part of a command, exactly one command,
or several commands back to back. The parser keeps a growable
per-connection buffer: ``feed()`` appends whatever was read and
``next_command()`` hands out complete commands one at a time, returning
None once the buffer holds no complete command.

Two request forms are accepted, as in Redis:

    Multibulk:  *<n>\\r\\n$<len>\\r\\n<bytes>\\r\\n ... (n bulk strings)
    Inline:     SET key value\\n  (any line not starting with '*')

Empty inline lines and empty multibulk requests (*0, *-1) produce no
command and no reply.

A multibulk request is parsed incrementally: the bulk strings already
framed are remembered between calls, so a request arriving in many
reads is scanned once in total.

Every malformed request yields exactly one ProtocolError:

- A bad inline line is dropped through its newline. A line that grows
  past the inline limit before its newline arrives is dropped as it
  comes in, up to and including that newline.
- A framing error anywhere in a multibulk request drops the rest of the
  request. Since its length can no longer be trusted, bytes are skipped
  until the next line starting with '*'.
"""

from typing import List, Optional, Tuple

from .commands import Command
from .resp import CRLF, IncompleteFrame, ProtocolError, encode, read_integer
from ..config.settings import settings

_SKIP = object()

# Resynchronisation modes after a protocol error
_SKIP_LINE = "line"
_SKIP_TO_MULTIBULK = "multibulk"

_ESCAPES = {
    ord("n"): b"\n",
    ord("r"): b"\r",
    ord("t"): b"\t",
    ord("b"): b"\b",
    ord("a"): b"\a",
}
_WHITESPACE = b" \t\r\n\v\f"
_HEX_DIGITS = b"0123456789abcdefABCDEF"


class ProtocolParser:
    """
    Incremental request parser for a single connection.

    Usage:
        parser = ProtocolParser()
        parser.feed(data)
        while True:
            try:
                command = parser.next_command()
            except ProtocolError as exc:
                ...  # reply with one error, the parser resynchronises
                continue
            if command is None:
                break
            ...
    """

    def __init__(
            self,
            max_inline_length: int = None,
            max_bulk_length: int = None,
            max_multibulk_length: int = None,
    ):
        self.max_inline_length = (
            max_inline_length if max_inline_length is not None else settings.MAX_INLINE_LENGTH
        )
        self.max_bulk_length = (
            max_bulk_length if max_bulk_length is not None else settings.MAX_BULK_LENGTH
        )
        self.max_multibulk_length = (
            max_multibulk_length if max_multibulk_length is not None else settings.MAX_MULTIBULK_LENGTH
        )
        self._buffer = bytearray()

        # State of a partially received multibulk request
        self._expected: Optional[int] = None
        self._words: List[bytes] = []
        self._pos = 0

        self._skipping: Optional[str] = None
        self._at_line_start = False

    @property
    def buffered(self) -> int:
        """Number of bytes received but not yet framed into a command."""
        return len(self._buffer)

    def feed(self, data: bytes) -> None:
        """Append bytes read from the connection to the buffer."""
        self._buffer.extend(data)

    def next_command(self) -> Optional[Command]:
        """
        Extract the next complete command from the buffer.

        Returns:
            The next Command, or None if more data is needed

        Raises:
            ProtocolError: The next request is malformed. Its bytes are
                discarded (now or as they arrive); calling again
                continues with the request after it.
        """
        while self._buffer:
            if self._skipping is not None:
                if not self._resync():
                    return None
                continue

            if self._expected is not None or self._buffer[0] == ord("*"):
                result = self._parse_multibulk()
            else:
                result = self._parse_inline()
            if result is not _SKIP:
                return result
        return None

    def format_response(self, value) -> bytes:
        """Encode a dispatcher reply for the wire."""
        return encode(value)

    def _parse_multibulk(self):
        buf = self._buffer

        if self._expected is None:
            try:
                count, pos = self._read_header(1)
            except ProtocolError:
                self._fail_multibulk("invalid multibulk length", 0)
            if count is None:
                return None
            if count > self.max_multibulk_length:
                self._fail_multibulk("invalid multibulk length", 0)
            if count <= 0:
                del buf[:pos]
                return _SKIP
            self._expected = count
            self._words = []
            self._pos = pos

        while len(self._words) < self._expected:
            pos = self._pos
            if pos >= len(buf):
                return None
            if buf[pos] != ord("$"):
                self._fail_multibulk(f"expected '$', got '{chr(buf[pos])}'", pos)

            try:
                length, start = self._read_header(pos + 1)
            except ProtocolError:
                self._fail_multibulk("invalid bulk length", pos)
            if length is None:
                return None
            if length < 0 or length > self.max_bulk_length:
                self._fail_multibulk("invalid bulk length", pos)

            end = start + length
            if len(buf) < end + 2:
                return None
            if buf[end:end + 2] != CRLF:
                self._fail_multibulk("bulk string not terminated by CRLF", end)

            self._words.append(bytes(buf[start:end]))
            self._pos = end + 2

        words, pos = self._words, self._pos
        raw = bytes(buf[:pos])
        del buf[:pos]
        self._reset_multibulk()
        return Command.from_words(words, raw)

    def _parse_inline(self):
        buf = self._buffer

        newline = buf.find(b"\n")
        if newline == -1:
            if len(buf) > self.max_inline_length:
                # The rest of this line is dropped as it arrives
                buf.clear()
                self._skipping = _SKIP_LINE
                raise ProtocolError("Protocol error: too big inline request", 0)
            return None
        if newline > self.max_inline_length:
            del buf[:newline + 1]
            raise ProtocolError("Protocol error: too big inline request", 0)

        raw = bytes(buf[:newline + 1])
        del buf[:newline + 1]

        line = raw.rstrip(b"\r\n")
        try:
            words = split_inline(line)
        except ValueError:
            raise ProtocolError("Protocol error: unbalanced quotes in request") from None

        if not words:
            return _SKIP
        return Command.from_words(words, raw)

    def _read_header(self, pos: int) -> Tuple[Optional[int], int]:
        """Read a *<n> or $<len> header; (None, pos) if the line is incomplete."""
        try:
            return read_integer(self._buffer, pos)
        except IncompleteFrame:
            if len(self._buffer) - pos > self.max_inline_length:
                raise ProtocolError("header too long", pos) from None
            return None, pos

    def _reset_multibulk(self) -> None:
        self._expected = None
        self._words = []
        self._pos = 0

    def _fail_multibulk(self, message: str, pos: int) -> None:
        """Abandon the multibulk request at the head of the buffer, then raise."""
        self._reset_multibulk()
        # Drop the '*' so the request itself is not mistaken for the next one
        del self._buffer[:1]
        self._skipping = _SKIP_TO_MULTIBULK
        self._at_line_start = False
        raise ProtocolError(f"Protocol error: {message}", pos)

    def _resync(self) -> bool:
        """Discard bytes left over from a bad request; True once parsing can resume."""
        buf = self._buffer

        if self._skipping == _SKIP_LINE:
            newline = buf.find(b"\n")
            if newline == -1:
                buf.clear()
                return False
            del buf[:newline + 1]
        else:
            if self._at_line_start and buf[:1] == b"*":
                self._skipping = None
                return True
            start = buf.find(b"\n*")
            if start == -1:
                self._at_line_start = buf.endswith(b"\n")
                buf.clear()
                return False
            del buf[:start + 1]

        self._skipping = None
        return True


def split_inline(line: bytes) -> List[bytes]:
    """
    Split an inline request into words, with Redis quoting rules.

    Words are separated by whitespace. Inside double quotes the escapes
    \\n \\r \\t \\b \\a \\\\ \\" and \\xHH are translated; inside single
    quotes only \\' is. Backslashes outside quotes are kept as they are.
    A closing quote must be followed by whitespace or the end of line.

    Raises:
        ValueError: On unbalanced quotes
    """
    words = []
    i, n = 0, len(line)

    while True:
        while i < n and line[i] in _WHITESPACE:
            i += 1
        if i >= n:
            return words

        word = bytearray()
        quote = None
        while True:
            if i >= n:
                if quote is not None:
                    raise ValueError("unbalanced quotes")
                break

            c = line[i]
            if quote == ord('"'):
                if c == ord("\\") and i + 3 < n and line[i + 1] == ord("x") \
                        and line[i + 2] in _HEX_DIGITS and line[i + 3] in _HEX_DIGITS:
                    word.append(int(line[i + 2:i + 4], 16))
                    i += 3
                elif c == ord("\\") and i + 1 < n:
                    i += 1
                    word += _ESCAPES.get(line[i], line[i:i + 1])
                elif c == ord('"'):
                    if i + 1 < n and line[i + 1] not in _WHITESPACE:
                        raise ValueError("closing quote must be followed by a space")
                    quote = None
                    i += 1
                    break
                else:
                    word.append(c)
            elif quote == ord("'"):
                if c == ord("\\") and i + 1 < n and line[i + 1] == ord("'"):
                    word.append(ord("'"))
                    i += 1
                elif c == ord("'"):
                    if i + 1 < n and line[i + 1] not in _WHITESPACE:
                        raise ValueError("closing quote must be followed by a space")
                    quote = None
                    i += 1
                    break
                else:
                    word.append(c)
            else:
                if c in _WHITESPACE:
                    break
                if c in (ord('"'), ord("'")):
                    quote = c
                else:
                    word.append(c)
            i += 1

        words.append(bytes(word))
