"""
Command Dispatcher Module

This module maps a parsed Command onto the shared KVStore and produces
the reply value, which the session encodes with the RESP codec.

Arity follows the Redis convention: a positive arity is the exact
number of words including the command name, a negative arity is the
minimum number of words.

Errors caused by the client (unknown command, wrong arity, bad option,
non-integer argument) never escape ``dispatch()``: they are returned as
RespError values so the session can reply and keep going.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .errors import (
    CommandError,
    CommandSyntaxError,
    IncrementOverflowError,
    InvalidExpireError,
    NotAnIntegerError,
    UnknownCommandError,
    WrongArityError,
)
from .. import __version__
from ..cache.store import INT64_MAX, KVStore, TTL_MISSING, TTL_PERSISTENT, parse_int64
from ..protocol.commands import Command, OK, PONG
from ..protocol.resp import RespError

logger = logging.getLogger(__name__)

Handler = Callable[["CommandDispatcher", List[bytes]], Any]
InfoProvider = Callable[[], Dict[str, Dict[str, Any]]]


@dataclass(frozen=True)
class CommandSpec:
    """
    Entry in the command table.

    Attributes:
        name: Upper-case command name
        arity: Redis-style arity (exact if positive, minimum if negative)
        handler: Function called with the dispatcher and the argument list
    """
    name: str
    arity: int
    handler: Handler

    def accepts(self, argc: int) -> bool:
        """Check whether a request with argc words (name included) fits the arity."""
        if self.arity >= 0:
            return argc == self.arity
        return argc >= -self.arity


class CommandDispatcher:
    """
    Executes commands against a shared KVStore.

    A single dispatcher is shared by all client sessions. Store
    operations are serialised by the store's own lock and the
    dispatcher's counters by a separate lock, so dispatch() may be
    called concurrently.

    Usage:
        dispatcher = CommandDispatcher(KVStore())
        reply = dispatcher.dispatch(Command("SET", [b"key", b"value"]))
        # reply == "OK"

    Attributes:
        store: The KVStore all commands operate on
    """

    def __init__(self, store: KVStore = None, info_provider: Optional[InfoProvider] = None):
        """
        Initialize the dispatcher.

        Args:
            store: KVStore instance (creates new one if not provided)
            info_provider: Callable returning extra INFO sections, usually
                supplied by the server (connected clients, port, ...)
        """
        self.store = store if store is not None else KVStore()
        self.info_provider = info_provider
        self._commands: Dict[str, CommandSpec] = {spec.name: spec for spec in COMMAND_TABLE}
        self._lock = threading.Lock()
        self._started = time.monotonic()
        self._total_commands = 0
        self._total_errors = 0

    @property
    def total_commands(self) -> int:
        return self._total_commands

    def command_names(self) -> List[str]:
        return sorted(self._commands)

    def dispatch(self, command: Command) -> Any:
        """
        Execute one command and return its reply value.

        Args:
            command: A fully-framed Command

        Returns:
            The reply: str for status replies, bytes for bulk strings,
            int, list, None for nil, or RespError for errors
        """
        logger.debug(f"Dispatching {command.name} with {len(command.args)} args")
        with self._lock:
            self._total_commands += 1

        try:
            spec = self._commands.get(command.name)
            if spec is None:
                raise UnknownCommandError(command.name, command.args)
            if not spec.accepts(command.argc):
                raise WrongArityError(spec.name)
            return spec.handler(self, command.args)
        except CommandError as exc:
            with self._lock:
                self._total_errors += 1
            logger.debug(f"Command {command.name} failed: {exc}")
            return RespError(exc.reply_text())

    # ------------------------------------------------------------------
    # Connection commands
    # ------------------------------------------------------------------

    def _cmd_ping(self, args):
        if len(args) > 1:
            raise WrongArityError("PING")
        return args[0] if args else PONG

    def _cmd_echo(self, args):
        return args[0]

    def _cmd_quit(self, args):
        # The session closes the connection once this reply is written
        return OK

    # ------------------------------------------------------------------
    # String commands
    # ------------------------------------------------------------------

    def _cmd_set(self, args):
        key, value = args[0], args[1]
        ttl = None
        nx = xx = keep_ttl = False

        options = args[2:]
        i = 0
        while i < len(options):
            option = options[i].upper()
            has_next = i + 1 < len(options)

            if option in (b"EX", b"PX") and ttl is None and not keep_ttl and has_next:
                amount = _int_arg(options[i + 1])
                if amount <= 0 or amount > INT64_MAX // 1000:
                    raise InvalidExpireError("set")
                ttl = float(amount) if option == b"EX" else amount / 1000.0
                i += 2
                continue

            if option == b"NX" and not xx:
                nx = True
            elif option == b"XX" and not nx:
                xx = True
            elif option == b"KEEPTTL" and ttl is None:
                keep_ttl = True
            else:
                raise CommandSyntaxError()
            i += 1

        stored = self.store.set(key, value, ttl=ttl, nx=nx, xx=xx, keep_ttl=keep_ttl)
        return OK if stored else None

    def _cmd_get(self, args):
        return self.store.get(args[0])

    def _cmd_incr(self, args):
        return self._incr_by(args[0], 1)

    def _cmd_decr(self, args):
        return self._incr_by(args[0], -1)

    def _cmd_incrby(self, args):
        return self._incr_by(args[0], _int_arg(args[1]))

    def _cmd_decrby(self, args):
        return self._incr_by(args[0], -_int_arg(args[1]))

    def _incr_by(self, key: bytes, delta: int) -> int:
        try:
            return self.store.incr_by(key, delta)
        except OverflowError:
            raise IncrementOverflowError() from None
        except ValueError:
            raise NotAnIntegerError() from None

    # ------------------------------------------------------------------
    # Keyspace commands
    # ------------------------------------------------------------------

    def _cmd_del(self, args):
        return self.store.delete(*args)

    def _cmd_exists(self, args):
        return self.store.exists(*args)

    def _cmd_expire(self, args):
        return int(self.store.expire(args[0], _expire_arg(args[1], "expire")))

    def _cmd_pexpire(self, args):
        return int(self.store.expire(args[0], _expire_arg(args[1], "pexpire") / 1000.0))

    def _cmd_ttl(self, args):
        remaining = self.store.ttl(args[0])
        if remaining in (TTL_MISSING, TTL_PERSISTENT):
            return remaining
        return int((remaining * 1000 + 500) // 1000)

    def _cmd_pttl(self, args):
        remaining = self.store.ttl(args[0])
        if remaining in (TTL_MISSING, TTL_PERSISTENT):
            return remaining
        return int(round(remaining * 1000))

    def _cmd_persist(self, args):
        return int(self.store.persist(args[0]))

    def _cmd_keys(self, args):
        return self.store.keys(args[0])

    def _cmd_dbsize(self, args):
        return self.store.get_stats()["active_keys"]

    def _cmd_flushdb(self, args):
        self.store.clear()
        return OK

    # ------------------------------------------------------------------
    # Server commands
    # ------------------------------------------------------------------

    def _cmd_info(self, args):
        if len(args) > 1:
            raise CommandSyntaxError()
        wanted = args[0].decode("utf-8", errors="replace").lower() if args else "default"

        lines = []
        for section, fields in self.info_sections().items():
            if wanted not in ("default", "all", "everything") and wanted != section:
                continue
            lines.append(f"# {section.capitalize()}")
            lines.extend(f"{name}:{value}" for name, value in fields.items())
            lines.append("")
        return "\r\n".join(lines).encode()

    def info_sections(self) -> Dict[str, Dict[str, Any]]:
        """Collect INFO fields from the dispatcher, the store and the server."""
        stats = self.store.get_stats()
        sections: Dict[str, Dict[str, Any]] = {
            "server": {
                "dicekv_version": __version__,
                "process_id": os.getpid(),
                "uptime_in_seconds": int(time.monotonic() - self._started),
            },
            "clients": {},
            "stats": {
                "total_commands_processed": self._total_commands,
                "total_error_replies": self._total_errors,
            },
            "keyspace": {
                "db0": f"keys={stats['active_keys']},expires={stats['volatile_keys']}",
            },
        }

        if self.info_provider is not None:
            for section, fields in self.info_provider().items():
                sections.setdefault(section, {}).update(fields)
        return sections


def _int_arg(arg: bytes) -> int:
    try:
        return parse_int64(arg)
    except ValueError:
        raise NotAnIntegerError() from None


def _expire_arg(arg: bytes, name: str) -> int:
    amount = _int_arg(arg)
    if abs(amount) > INT64_MAX // 1000:
        raise InvalidExpireError(name)
    return amount


COMMAND_TABLE = [
    CommandSpec("PING", -1, CommandDispatcher._cmd_ping),
    CommandSpec("ECHO", 2, CommandDispatcher._cmd_echo),
    CommandSpec("QUIT", 1, CommandDispatcher._cmd_quit),
    CommandSpec("SET", -3, CommandDispatcher._cmd_set),
    CommandSpec("GET", 2, CommandDispatcher._cmd_get),
    CommandSpec("INCR", 2, CommandDispatcher._cmd_incr),
    CommandSpec("DECR", 2, CommandDispatcher._cmd_decr),
    CommandSpec("INCRBY", 3, CommandDispatcher._cmd_incrby),
    CommandSpec("DECRBY", 3, CommandDispatcher._cmd_decrby),
    CommandSpec("DEL", -2, CommandDispatcher._cmd_del),
    CommandSpec("EXISTS", -2, CommandDispatcher._cmd_exists),
    CommandSpec("EXPIRE", 3, CommandDispatcher._cmd_expire),
    CommandSpec("PEXPIRE", 3, CommandDispatcher._cmd_pexpire),
    CommandSpec("TTL", 2, CommandDispatcher._cmd_ttl),
    CommandSpec("PTTL", 2, CommandDispatcher._cmd_pttl),
    CommandSpec("PERSIST", 2, CommandDispatcher._cmd_persist),
    CommandSpec("KEYS", 2, CommandDispatcher._cmd_keys),
    CommandSpec("DBSIZE", 1, CommandDispatcher._cmd_dbsize),
    CommandSpec("FLUSHDB", 1, CommandDispatcher._cmd_flushdb),
    CommandSpec("INFO", -1, CommandDispatcher._cmd_info),
]
