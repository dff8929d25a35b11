"""
RESP Codec Module

Encoding and decoding of the REdis Serialization Protocol.

The decoder works on a buffer and a start offset and returns
``(value, next_pos)`` so that callers holding a growing buffer can
decode frame after frame. When the buffer ends before the frame does,
``IncompleteFrame`` is raised and the caller should wait for more data.
Malformed input raises ``ProtocolError``.

Decoded Python types:
    +  simple string  -> str
    -  error          -> RespError
    :  integer        -> int
    $  bulk string    -> bytes (None for $-1)
    *  array          -> list (None for *-1)
    _  null           -> None
    #  boolean        -> bool
    ,  double         -> float
    (  big number     -> int
    =  verbatim       -> bytes (format prefix stripped)
    %  map            -> dict
    ~  set            -> set
    >  push           -> list

The encoder emits RESP2 only, which is what the server replies with.
"""

from dataclasses import dataclass
from typing import Any, Tuple

CRLF = b"\r\n"


class ProtocolError(Exception):
    """
    Raised on malformed RESP input.

    Attributes:
        pos: Offset in the buffer where the problem was detected
    """

    def __init__(self, message: str, pos: int = 0):
        super().__init__(message)
        self.pos = pos


class IncompleteFrame(Exception):
    """Raised when the buffer ends before a complete frame."""


@dataclass(frozen=True)
class RespError:
    """An error reply (``-ERR ...``)."""
    message: str

    def __str__(self) -> str:
        return self.message


def read_line(data: bytes, pos: int) -> Tuple[bytes, int]:
    """
    Read a CRLF-terminated line starting at pos.

    Returns:
        The line without its terminator, and the offset just past it
    """
    end = data.find(CRLF, pos)
    if end == -1:
        raise IncompleteFrame()
    return bytes(data[pos:end]), end + 2


def read_integer(data: bytes, pos: int) -> Tuple[int, int]:
    """Read a CRLF-terminated signed integer starting at pos."""
    line, next_pos = read_line(data, pos)
    try:
        return int(line), next_pos
    except ValueError:
        raise ProtocolError(f"invalid integer {line!r}", pos) from None


def _read_simple_string(data, pos):
    line, next_pos = read_line(data, pos)
    return line.decode("utf-8", errors="replace"), next_pos


def _read_error(data, pos):
    message, next_pos = _read_simple_string(data, pos)
    return RespError(message), next_pos


def _read_bulk_string(data, pos):
    length, start = read_integer(data, pos)
    if length == -1:
        return None, start
    if length < 0:
        raise ProtocolError("invalid bulk length", pos)

    end = start + length
    if len(data) < end + 2:
        raise IncompleteFrame()
    if data[end:end + 2] != CRLF:
        raise ProtocolError("bulk string not terminated by CRLF", end)
    return bytes(data[start:end]), end + 2


def _read_verbatim(data, pos):
    value, next_pos = _read_bulk_string(data, pos)
    if value is None or len(value) < 4 or value[3:4] != b":":
        raise ProtocolError("invalid verbatim string", pos)
    return value[4:], next_pos


def _read_aggregate(data, pos):
    count, next_pos = read_integer(data, pos)
    if count == -1:
        return None, next_pos
    if count < 0:
        raise ProtocolError("invalid aggregate length", pos)

    items = []
    for _ in range(count):
        item, next_pos = decode(data, next_pos)
        items.append(item)
    return items, next_pos


def _read_map(data, pos):
    count, next_pos = read_integer(data, pos)
    if count < 0:
        raise ProtocolError("invalid map length", pos)

    result = {}
    for _ in range(count):
        item_pos = next_pos
        key, next_pos = decode(data, next_pos)
        value, next_pos = decode(data, next_pos)
        try:
            result[key] = value
        except TypeError:
            raise ProtocolError("unhashable map key", item_pos) from None
    return result, next_pos


def _read_set(data, pos):
    items, next_pos = _read_aggregate(data, pos)
    if items is None:
        raise ProtocolError("invalid set length", pos)
    try:
        return set(items), next_pos
    except TypeError:
        raise ProtocolError("unhashable set member", pos) from None


def _read_null(data, pos):
    line, next_pos = read_line(data, pos)
    if line:
        raise ProtocolError("invalid null", pos)
    return None, next_pos


def _read_boolean(data, pos):
    line, next_pos = read_line(data, pos)
    if line == b"t":
        return True, next_pos
    if line == b"f":
        return False, next_pos
    raise ProtocolError("invalid boolean", pos)


def _read_double(data, pos):
    line, next_pos = read_line(data, pos)
    try:
        return float(line), next_pos
    except ValueError:
        raise ProtocolError(f"invalid double {line!r}", pos) from None


_READERS = {
    b"+"[0]: _read_simple_string,
    b"-"[0]: _read_error,
    b":"[0]: read_integer,
    b"$"[0]: _read_bulk_string,
    b"*"[0]: _read_aggregate,
    b"_"[0]: _read_null,
    b"#"[0]: _read_boolean,
    b","[0]: _read_double,
    b"("[0]: read_integer,
    b"="[0]: _read_verbatim,
    b"%"[0]: _read_map,
    b"~"[0]: _read_set,
    b">"[0]: _read_aggregate,
}


def decode(data: bytes, pos: int = 0) -> Tuple[Any, int]:
    """
    Decode one RESP value from data starting at pos.

    Args:
        data: Buffer holding one or more frames (bytes or bytearray)
        pos: Offset of the type byte

    Returns:
        Tuple of (decoded value, offset just past the frame)

    Raises:
        IncompleteFrame: More data is needed
        ProtocolError: The frame is malformed

    Examples:
        >>> decode(b"+OK\\r\\n")
        ('OK', 5)
        >>> decode(b"$3\\r\\nfoo\\r\\n")
        (b'foo', 9)
    """
    if pos >= len(data):
        raise IncompleteFrame()

    reader = _READERS.get(data[pos])
    if reader is None:
        raise ProtocolError(f"invalid RESP type byte {chr(data[pos])!r}", pos)
    return reader(data, pos + 1)


def encode(value: Any) -> bytes:
    """
    Encode a Python value as a RESP2 reply.

    str becomes a simple string, bytes a bulk string, None the nil bulk
    string, bool and int an integer, float a bulk string, RespError an
    error, and list/tuple/set an array. dict is sent as a flat array of
    alternating keys and values.

    Raises:
        TypeError: For values with no RESP representation
    """
    if value is None:
        return b"$-1\r\n"
    if isinstance(value, RespError):
        return b"-" + _single_line(value.message) + CRLF
    if isinstance(value, str):
        return b"+" + _single_line(value) + CRLF
    if isinstance(value, (bytes, bytearray)):
        return b"$%d\r\n%s\r\n" % (len(value), bytes(value))
    if isinstance(value, bool):
        return b":1\r\n" if value else b":0\r\n"
    if isinstance(value, int):
        return b":%d\r\n" % value
    if isinstance(value, float):
        return encode(repr(value).encode())
    if isinstance(value, dict):
        flat = []
        for key, item in value.items():
            flat.extend((key, item))
        return encode(flat)
    if isinstance(value, (list, tuple, set, frozenset)):
        parts = [b"*%d\r\n" % len(value)]
        parts.extend(encode(item) for item in value)
        return b"".join(parts)
    raise TypeError(f"cannot encode {type(value).__name__} as RESP")


def encode_command(*args: Any) -> bytes:
    """Encode a request as an array of bulk strings."""
    parts = [b"*%d\r\n" % len(args)]
    for arg in args:
        if isinstance(arg, str):
            arg = arg.encode()
        elif isinstance(arg, (int, float)):
            arg = str(arg).encode()
        parts.append(b"$%d\r\n%s\r\n" % (len(arg), arg))
    return b"".join(parts)


def _single_line(text: str) -> bytes:
    # Simple strings and errors cannot carry CR or LF
    return text.replace("\r", " ").replace("\n", " ").encode()
