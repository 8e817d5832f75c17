"""
Cache interface for policygate state.

The engine keeps two kinds of state in a cache:
    - acl_rules: the whole ACL bucket map under one key, never expiring
    - permission_{user}_{resource}: per-user level overrides with a TTL

Backends implement the Cache ABC. Two ship with the package:
    - MemoryCache: process-local dict with TTL (this module)
    - SqliteCache: single-file persistent cache (store/db.py)

Contract:
    get(key) -> (value, hit)      a miss returns (None, False)
    set(key, value, ttl=None)     ttl=None means no expiry
    delete(key) -> bool           True if an entry was removed

Values must be JSON-compatible (dicts, lists, strings, numbers, bools, None)
so every backend can store them. Backends return copies, never the stored
object itself.
"""

import copy
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

# Seconds between sweeps of expired MemoryCache entries
SWEEP_INTERVAL = 60.0


class Cache(ABC):
    """
    Abstract key/value cache with optional per-entry TTL.

    Implementations must make get/set/delete atomic per key; the engine
    relies on that and does not lock around cache calls itself.
    """

    @abstractmethod
    def get(self, key: str) -> tuple[Any, bool]:
        """
        Look up a key.

        Args:
            key: Cache key

        Returns:
            Tuple of (value, hit). Expired entries are misses.
        """
        ...

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """
        Store a value.

        Args:
            key: Cache key
            value: JSON-compatible value
            ttl: Seconds until the entry expires (None = never)
        """
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        """
        Remove a key.

        Returns:
            True if an entry was removed, False if there was none
        """
        ...

    def close(self) -> None:
        """Release backend resources. The default does nothing."""

    def __enter__(self) -> "Cache":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()


class MemoryCache(Cache):
    """
    In-process cache with TTL support.

    Expired entries are dropped when read, and swept from the whole cache by
    a set() at most once every SWEEP_INTERVAL seconds, so keys that are
    never read again do not accumulate.

    Usage:
        cache = MemoryCache()
        cache.set("permission_u1_file", 2, ttl=3600)
        value, hit = cache.get("permission_u1_file")

    Attributes:
        _entries: key -> (value, expires_at or None)
        _clock: Monotonic time source, injectable for tests
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """
        Initialize an empty cache.

        Args:
            clock: Returns the current time in seconds
        """
        self._entries: dict[str, tuple[Any, float | None]] = {}
        self._clock = clock
        self._lock = threading.Lock()
        self._next_sweep = clock() + SWEEP_INTERVAL

    def get(self, key: str) -> tuple[Any, bool]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None, False

            value, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._entries[key]
                return None, False

            return copy.deepcopy(value), True

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        now = self._clock()
        expires_at = None if ttl is None else now + ttl
        with self._lock:
            if now >= self._next_sweep:
                self._purge(now)
                self._next_sweep = now + SWEEP_INTERVAL
            self._entries[key] = (copy.deepcopy(value), expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        """Remove every entry."""
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        """
        Delete every expired entry.

        Returns:
            Number of entries removed
        """
        with self._lock:
            return self._purge(self._clock())

    def _purge(self, now: float) -> int:
        expired = [
            key for key, (_, expires_at) in self._entries.items()
            if expires_at is not None and now >= expires_at
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        """Number of live entries."""
        with self._lock:
            now = self._clock()
            return sum(
                1 for _, expires_at in self._entries.values()
                if expires_at is None or now < expires_at
            )

    def __contains__(self, key: str) -> bool:
        """Check for a live entry using 'in'."""
        return self.get(key)[1]

    def __repr__(self) -> str:
        return f"<MemoryCache: {len(self)} entries>"
