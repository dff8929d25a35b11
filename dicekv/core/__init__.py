"""Command dispatch core for DiceKV."""

from .dispatcher import CommandDispatcher, CommandSpec
from .errors import CommandError

__all__ = ["CommandDispatcher", "CommandSpec", "CommandError"]
