"""
Key-Value Store Module

This module implements the keyspace of one logical database: a flat
mapping from key to a typed value with an optional expiration deadline.
"""

import fnmatch
import time
from collections import deque
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from ..exceptions import WrongTypeError
from .datatypes import HashValue, SetValue, SortedSet
from .hyperloglog import HyperLogLog
from .streams import Stream


def type_name(value: Any) -> str:
    """Name of a stored value's type as reported by TYPE."""
    if isinstance(value, (bytes, HyperLogLog)):
        return "string"
    if isinstance(value, deque):
        return "list"
    if isinstance(value, SetValue):
        return "set"
    if isinstance(value, SortedSet):
        return "zset"
    if isinstance(value, HashValue):
        return "hash"
    if isinstance(value, Stream):
        return "stream"
    return "none"


class KVStore:
    """
    In-memory keyspace with TTL support.

    This class provides O(1) average-case time complexity for:
    - put: Insert or overwrite a key
    - get: Retrieve a value by key
    - delete: Remove a key
    - exists: Check if a key exists

    Expiration is enforced lazily on every access and actively through
    cleanup_expired(), which the server calls periodically.

    Internal Storage:
        Format: key -> (value, expiration_timestamp)
        expiration_timestamp = 0 means no expiration
    """

    def __init__(self):
        self._store: Dict[bytes, Tuple[Any, float]] = {}

    def put(self, key: bytes, value: Any, ttl: float = 0, keep_ttl: bool = False) -> bool:
        """
        Insert or overwrite a key.

        Args:
            key: The key to store
            value: The value (bytes, deque, SetValue, SortedSet, ...)
            ttl: Time-to-live in seconds (0 = no expiration)
            keep_ttl: Retain the existing deadline instead of clearing it

        Returns:
            True on success
        """
        if keep_ttl and ttl <= 0:
            expires_at = self._deadline(key)
        else:
            expires_at = time.time() + ttl if ttl and ttl > 0 else 0
        self._store[key] = (value, expires_at)
        return True

    def get(self, key: bytes) -> Optional[Any]:
        """
        Retrieve the value for a given key.

        Returns:
            The value if found and not expired, None otherwise
        """
        entry = self._store.get(key)
        if entry is None:
            return None

        value, expires_at = entry
        if expires_at and expires_at <= time.time():
            # Lazy expiration
            self._store.pop(key, None)
            return None
        return value

    def get_typed(self, key: bytes, kind: Type) -> Optional[Any]:
        """
        Retrieve a value that must be of the given type.

        Raises:
            WrongTypeError: The key holds a value of another type
        """
        value = self.get(key)
        if value is not None and not isinstance(value, kind):
            raise WrongTypeError()
        return value

    def get_or_create(self, key: bytes, kind: Type, factory: Callable[[], Any] = None) -> Any:
        """Return the value at key, storing a fresh one when absent."""
        value = self.get_typed(key, kind)
        if value is None:
            value = factory() if factory is not None else kind()
            self._store[key] = (value, 0)
        return value

    def drop_if_empty(self, key: bytes) -> None:
        """Remove a collection that no longer holds any element."""
        entry = self._store.get(key)
        if entry is not None and not isinstance(entry[0], (bytes, Stream, HyperLogLog)):
            if len(entry[0]) == 0:
                self._store.pop(key, None)

    def delete(self, key: bytes) -> bool:
        """
        Delete a key.

        Returns:
            True if key was deleted, False if it didn't exist or had expired
        """
        if self.get(key) is None:
            return False
        self._store.pop(key, None)
        return True

    def exists(self, key: bytes) -> bool:
        """Check if a key exists and is not expired."""
        return self.get(key) is not None

    def expire(self, key: bytes, ttl: float) -> bool:
        """
        Set a time-to-live on an existing key.

        Returns:
            False when the key does not exist
        """
        value = self.get(key)
        if value is None:
            return False
        self._store[key] = (value, time.time() + ttl)
        return True

    def persist(self, key: bytes) -> bool:
        """Remove the deadline of a key. Returns True if one was removed."""
        value = self.get(key)
        if value is None or not self._deadline(key):
            return False
        self._store[key] = (value, 0)
        return True

    def ttl_ms(self, key: bytes) -> int:
        """
        Remaining time-to-live in milliseconds.

        Returns:
            -2 if the key does not exist, -1 if it has no expiration
        """
        if self.get(key) is None:
            return -2
        expires_at = self._deadline(key)
        if not expires_at:
            return -1
        return max(0, int(round((expires_at - time.time()) * 1000)))

    def type_of(self, key: bytes) -> str:
        return type_name(self.get(key))

    def keys(self, pattern: bytes = b"*") -> List[bytes]:
        """Return the live keys matching a glob-style pattern."""
        now = time.time()
        return [
            key for key, (_, expires_at) in list(self._store.items())
            if not (expires_at and expires_at <= now)
            and fnmatch.fnmatchcase(key, pattern)
        ]

    def size(self) -> int:
        """
        Get the current number of keys in the store.

        Note: This may include expired keys that haven't been cleaned up yet.
        """
        return len(self._store)

    def clear(self) -> None:
        """Remove all keys from the store."""
        self._store.clear()

    def cleanup_expired(self) -> int:
        """
        Remove all expired keys from the store (active expiration).

        Returns:
            Number of keys removed
        """
        now = time.time()
        to_delete = [k for k, (_, exp) in self._store.items() if exp and exp <= now]
        for key in to_delete:
            self._store.pop(key, None)
        return len(to_delete)

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the store.

        Returns:
            Dictionary containing:
            - total_keys: Total keys in store
            - expired_keys: Count of expired (but not yet cleaned) keys
            - active_keys: Count of non-expired keys
            - volatile_keys: Count of live keys with a deadline
        """
        now = time.time()
        total = len(self._store)
        expired = sum(1 for _, (_, expires_at) in self._store.items() if 0 < expires_at <= now)
        volatile = sum(1 for _, (_, expires_at) in self._store.items() if expires_at > now)

        return {
            "total_keys": total,
            "expired_keys": expired,
            "active_keys": total - expired,
            "volatile_keys": volatile,
        }

    def _deadline(self, key: bytes) -> float:
        entry = self._store.get(key)
        return entry[1] if entry is not None else 0
