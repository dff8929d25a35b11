"""Networking module for DiceKV."""

from .session import ClientSession, SessionState
from .tcp_server import BindError, ConnectionCounter, DiceServer, run_server

__all__ = [
    "BindError",
    "ClientSession",
    "ConnectionCounter",
    "DiceServer",
    "SessionState",
    "run_server",
]
