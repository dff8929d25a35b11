"""
Key-Value Store Module

This module implements the shared in-memory keyspace.

Every public method takes the store lock, so a single KVStore can be
used from any number of client sessions (or threads) at once without
corrupting its state. Keys and values are raw bytes.
"""

import fnmatch
import threading
import time
from collections import OrderedDict
from typing import Optional, Tuple, Dict, Any, List

from ..config.settings import settings

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

# Returned by ttl() for keys that are missing / have no expiration
TTL_MISSING = -2
TTL_PERSISTENT = -1


class KVStore:
    """
    In-memory key-value store with TTL and LRU eviction support.

    This class provides O(1) average-case time complexity for:
    - set: Insert or update a key-value pair
    - get: Retrieve a value by key
    - delete: Remove key-value pairs
    - exists: Check if keys exist

    Features:
    - TTL (Time-To-Live): Keys can automatically expire after a specified time
    - LRU Eviction: When max_size is set and reached, the least recently
      used key is evicted

    Internal Storage:
        Uses OrderedDict for O(1) operations with LRU ordering.
        Format: key -> (value, expiration_timestamp)
        expiration_timestamp = 0 means no expiration

    Concurrency:
        A single re-entrant lock guards all operations.

    Attributes:
        max_size: Maximum number of keys allowed in the store (0 = unbounded)
    """

    def __init__(self, max_size: int = None):
        """
        Initialize the KV store.

        Args:
            max_size: Maximum number of keys (default from settings.MAX_KEYS)
        """
        self.max_size = max_size if max_size is not None else settings.MAX_KEYS

        self._store: "OrderedDict[bytes, Tuple[bytes, float]]" = OrderedDict()
        self._lock = threading.RLock()

    def _lookup(self, key: bytes) -> Optional[Tuple[bytes, float]]:
        """Return the live entry for key, dropping it if expired. Lock must be held."""
        entry = self._store.get(key)
        if entry is None:
            return None

        _, expires_at = entry
        if expires_at and expires_at <= time.time():
            # Lazy expiration
            del self._store[key]
            return None
        return entry

    def _insert(self, key: bytes, value: bytes, expires_at: float) -> None:
        """Insert or overwrite key, evicting the LRU key when full. Lock must be held."""
        if key in self._store:
            self._store[key] = (value, expires_at)
            self._store.move_to_end(key)
            return

        if self.max_size and len(self._store) >= self.max_size:
            self._store.popitem(last=False)

        self._store[key] = (value, expires_at)

    def set(
            self,
            key: bytes,
            value: bytes,
            ttl: Optional[float] = None,
            nx: bool = False,
            xx: bool = False,
            keep_ttl: bool = False,
    ) -> bool:
        """
        Insert or update a key-value pair.

        Args:
            key: The key to store
            value: The value to associate with the key
            ttl: Time-to-live in seconds (None = no expiration)
            nx: Only set the key if it does not already exist
            xx: Only set the key if it already exists
            keep_ttl: Retain the expiration of an existing key

        Returns:
            True if the value was stored, False if the NX/XX condition failed
        """
        with self._lock:
            current = self._lookup(key)
            if nx and current is not None:
                return False
            if xx and current is None:
                return False

            if ttl is not None:
                expires_at = time.time() + ttl
            elif keep_ttl and current is not None:
                expires_at = current[1]
            else:
                expires_at = 0

            self._insert(key, value, expires_at)
            return True

    def get(self, key: bytes) -> Optional[bytes]:
        """
        Retrieve the value for a given key.

        Returns:
            The value if found and not expired, None otherwise
        """
        with self._lock:
            entry = self._lookup(key)
            if entry is None:
                return None

            # Mark as most recently used
            self._store.move_to_end(key)
            return entry[0]

    def delete(self, *keys: bytes) -> int:
        """
        Delete keys.

        Expired keys are treated as non-existent.

        Returns:
            Number of keys that were removed
        """
        removed = 0
        with self._lock:
            for key in keys:
                if self._lookup(key) is not None:
                    del self._store[key]
                    removed += 1
        return removed

    def exists(self, *keys: bytes) -> int:
        """
        Count how many of the given keys exist (and are not expired).

        A key given more than once is counted more than once.
        """
        with self._lock:
            return sum(1 for key in keys if self._lookup(key) is not None)

    def expire(self, key: bytes, ttl: float) -> bool:
        """
        Set a timeout on key. A non-positive ttl deletes the key.

        Returns:
            True if the timeout was set (or the key deleted), False if the
            key does not exist
        """
        with self._lock:
            entry = self._lookup(key)
            if entry is None:
                return False

            if ttl <= 0:
                del self._store[key]
            else:
                self._store[key] = (entry[0], time.time() + ttl)
            return True

    def persist(self, key: bytes) -> bool:
        """Remove the timeout on key. Returns True if a timeout was removed."""
        with self._lock:
            entry = self._lookup(key)
            if entry is None or not entry[1]:
                return False

            self._store[key] = (entry[0], 0)
            return True

    def ttl(self, key: bytes) -> float:
        """
        Get the remaining time to live of key in seconds.

        Returns:
            Remaining seconds, TTL_PERSISTENT (-1) if the key has no
            expiration, or TTL_MISSING (-2) if the key does not exist
        """
        with self._lock:
            entry = self._lookup(key)
            if entry is None:
                return TTL_MISSING
            if not entry[1]:
                return TTL_PERSISTENT
            return max(entry[1] - time.time(), 0.0)

    def incr_by(self, key: bytes, delta: int) -> int:
        """
        Increment the integer stored at key by delta.

        A missing key is treated as 0. The key's expiration is kept.

        Raises:
            ValueError: If the stored value is not a 64-bit integer
            OverflowError: If the result does not fit in 64 bits
        """
        with self._lock:
            entry = self._lookup(key)
            if entry is None:
                current, expires_at = 0, 0
            else:
                current = parse_int64(entry[0])
                expires_at = entry[1]

            result = current + delta
            if result < INT64_MIN or result > INT64_MAX:
                raise OverflowError("increment or decrement would overflow")

            self._insert(key, str(result).encode(), expires_at)
            return result

    def keys(self, pattern: bytes = b"*") -> List[bytes]:
        """
        Return all live keys matching a Redis glob pattern.

        Supports *, ?, [abc], [a-z], [^abc] and backslash escapes such
        as \\*. Inside brackets a backslash is a literal character and a
        leading ! also negates.
        """
        matcher = redis_glob_to_fnmatch(pattern.decode("latin-1"))
        with self._lock:
            now = time.time()
            return [
                key for key, (_, expires_at) in self._store.items()
                if not (expires_at and expires_at <= now)
                and fnmatch.fnmatchcase(key.decode("latin-1"), matcher)
            ]

    def size(self) -> int:
        """
        Get the current number of keys in the store.

        Note: This may include expired keys that haven't been cleaned up yet.
        """
        with self._lock:
            return len(self._store)

    def clear(self) -> None:
        """Remove all keys from the store."""
        with self._lock:
            self._store.clear()

    def cleanup_expired(self) -> int:
        """
        Remove all expired keys from the store (active expiration).

        Returns:
            Number of keys removed
        """
        with self._lock:
            now = time.time()
            to_delete = [k for k, (_, exp) in self._store.items() if exp and exp <= now]
            for key in to_delete:
                del self._store[key]
            return len(to_delete)

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the store.

        Returns:
            Dictionary containing:
            - total_keys: Total keys in store
            - expired_keys: Count of expired (but not yet cleaned) keys
            - active_keys: Count of non-expired keys
            - volatile_keys: Count of live keys carrying an expiration
            - max_size: Maximum capacity (0 = unbounded)
        """
        with self._lock:
            now = time.time()
            total = len(self._store)
            expired = 0
            volatile = 0
            for _, expires_at in self._store.values():
                if not expires_at:
                    continue
                if expires_at <= now:
                    expired += 1
                else:
                    volatile += 1

        return {
            "total_keys": total,
            "expired_keys": expired,
            "active_keys": total - expired,
            "volatile_keys": volatile,
            "max_size": self.max_size,
        }


def parse_int64(value: bytes) -> int:
    """Parse a stored value as a signed 64-bit integer, the way INCR reads it."""
    if not value or len(value) > 20 or value != value.strip():
        raise ValueError("value is not an integer")
    number = int(value)
    if str(number).encode() != value or not INT64_MIN <= number <= INT64_MAX:
        raise ValueError("value is not an integer")
    return number


def redis_glob_to_fnmatch(pattern: str) -> str:
    """Rewrite Redis glob syntax (``\\x`` escapes, ``[^...]``) for fnmatch."""
    out = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if c == "\\" and i + 1 < len(pattern):
            i += 1
            c = pattern[i]
            out.append(f"[{c}]" if c in "*?[" else c)
        elif c == "[" and pattern[i + 1:i + 2] == "^":
            out.append("[!")
            i += 1
        else:
            out.append(c)
        i += 1
    return "".join(out)
