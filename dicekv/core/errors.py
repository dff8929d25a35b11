"""
Dispatch Errors

Exceptions raised by command handlers. The dispatcher turns every one of
them into an error reply; none of them ever reaches the session.
"""


class CommandError(Exception):
    """Base class for errors reported back to the client as ``-ERR ...``."""

    prefix = "ERR"

    def reply_text(self) -> str:
        return f"{self.prefix} {self}"


class UnknownCommandError(CommandError):
    """The command name is not in the command table."""

    def __init__(self, name: str, args):
        preview = " ".join(f"'{arg.decode('utf-8', errors='replace')}'" for arg in args[:8])
        super().__init__(f"unknown command '{name}', with args beginning with: {preview}".rstrip())


class WrongArityError(CommandError):
    """Wrong number of arguments for a known command."""

    def __init__(self, name: str):
        super().__init__(f"wrong number of arguments for '{name.lower()}' command")


class CommandSyntaxError(CommandError):
    """Unrecognised or conflicting command options."""

    def __init__(self):
        super().__init__("syntax error")


class NotAnIntegerError(CommandError):
    """An argument or stored value that must be an integer is not one."""

    def __init__(self):
        super().__init__("value is not an integer or out of range")


class IncrementOverflowError(CommandError):
    """An increment would leave the signed 64-bit range."""

    def __init__(self):
        super().__init__("increment or decrement would overflow")


class InvalidExpireError(CommandError):
    """A non-positive or out-of-range expire time."""

    def __init__(self, name: str):
        super().__init__(f"invalid expire time in '{name.lower()}' command")
