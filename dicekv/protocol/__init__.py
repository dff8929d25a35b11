"""Protocol module for DiceKV."""

from .commands import Command, OK, PONG
from .parser import ProtocolParser
from .resp import IncompleteFrame, ProtocolError, RespError, decode, encode, encode_command

__all__ = [
    "Command",
    "OK",
    "PONG",
    "ProtocolParser",
    "IncompleteFrame",
    "ProtocolError",
    "RespError",
    "decode",
    "encode",
    "encode_command",
]
