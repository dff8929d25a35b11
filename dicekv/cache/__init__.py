"""Cache module for DiceKV."""

from .store import KVStore, TTL_MISSING, TTL_PERSISTENT

__all__ = ["KVStore", "TTL_MISSING", "TTL_PERSISTENT"]
