"""
Protocol Command Definitions

This module defines the parsed form of a client request and the
status replies shared by the dispatcher and the session.
"""

from dataclasses import dataclass, field
from typing import List

# Status replies, sent as RESP simple strings
OK = "OK"
PONG = "PONG"


@dataclass
class Command:
    """
    Represents one fully-framed client request.

    Attributes:
        name: The command name, upper-cased (e.g. "SET")
        args: The arguments following the name, as raw bytes
        raw: The exact bytes the command was framed from
    """
    name: str
    args: List[bytes] = field(default_factory=list)
    raw: bytes = b""

    @property
    def argc(self) -> int:
        """Number of words in the request, including the command name."""
        return len(self.args) + 1

    @classmethod
    def from_words(cls, words: List[bytes], raw: bytes = b"") -> "Command":
        """Build a command from the request words; the first word is the name."""
        name = words[0].decode("utf-8", errors="replace").upper()
        return cls(name=name, args=list(words[1:]), raw=raw)
