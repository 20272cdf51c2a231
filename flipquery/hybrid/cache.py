"""
Generated-SQL cache.

A confirmed QuerySpec always maps to the same SQL, so the processor keeps
the remote endpoint's answers in a small in-memory TTL cache keyed by
``make_key`` of the structured prompt.  Process-local and thread-safe.
Entries live in insertion order, so the front of the store is always the
oldest entry and the first to go when the cache is full.
"""
from __future__ import annotations

import hashlib
import json
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, NamedTuple

from flipquery.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 600
DEFAULT_MAX_SIZE = 256


class _Slot(NamedTuple):
    value: Any
    expires_at: float


def make_key(payload: Any) -> str:
    """sha256 of *payload*'s canonical JSON (sorted keys, no whitespace)."""
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode()).hexdigest()


class QueryCache:
    """Thread-safe in-memory TTL cache.

    Parameters
    ----------
    ttl : float
        Time-to-live in seconds for each entry.
    max_size : int
        Maximum number of entries. Oldest entries are evicted when full.
    clock : callable, optional
        Monotonic time source; ``time.monotonic`` unless injected.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL_SECONDS,
        max_size: int = DEFAULT_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._slots: OrderedDict[str, _Slot] = OrderedDict()
        self._guard = threading.Lock()
        self._ttl = ttl
        self._max_size = max_size
        self._clock = clock
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str) -> Any | None:
        """Cached value, or ``None`` on miss / expiry."""
        with self._guard:
            slot = self._slots.get(key)
            if slot is not None and slot.expires_at <= self._clock():
                del self._slots[key]
                slot = None
            if slot is None:
                self._misses += 1
                return None
            self._hits += 1
        logger.debug("SQL cache hit %s", key[:12])
        return slot.value

    def set(self, key: str, value: Any) -> None:
        with self._guard:
            self._slots.pop(key, None)
            while len(self._slots) >= self._max_size:
                evicted, _ = self._slots.popitem(last=False)
                self._evictions += 1
                logger.debug("SQL cache evicted %s", evicted[:12])
            self._slots[key] = _Slot(value, self._clock() + self._ttl)

    def invalidate(self, key: str | None = None) -> int:
        """Drop one entry, or everything when *key* is None; returns how many went."""
        with self._guard:
            if key is not None:
                return 0 if self._slots.pop(key, None) is None else 1
            dropped = len(self._slots)
            self._slots.clear()
        logger.info("SQL cache flushed (%d entries)", dropped)
        return dropped

    def cleanup_expired(self) -> int:
        with self._guard:
            now = self._clock()
            stale = [k for k, slot in self._slots.items() if slot.expires_at <= now]
            for k in stale:
                del self._slots[k]
        return len(stale)

    def stats(self) -> dict[str, Any]:
        with self._guard:
            lookups = self._hits + self._misses
            return {
                "size": len(self._slots),
                "max_size": self._max_size,
                "ttl_seconds": self._ttl,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": round(self._hits / lookups, 3) if lookups else 0.0,
            }
