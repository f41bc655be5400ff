"""
In-memory TTL caches shared by every upstream-calling component.

Entries expire lazily: a stale entry is evicted when a lookup observes it,
never by a background sweep. There is no size-based eviction.

Writes and evictions are serialised by a per-cache lock; lookups take no
lock. A lookup is a single dict read, which is atomic, and stored values are
frozen entries (or plain floats) that are replaced whole, never mutated, so a
reader sees either the old value or the new one and never a mix. The only
write a reader performs is evicting what it judged stale, and that happens
under the lock and only if the key still holds the exact value the reader
looked at, so a concurrent rewrite is never lost.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """A cached upstream response.

    Attributes:
        body: Raw response bytes
        expires_at: Clock reading at which the entry stops being served
        status: HTTP status code, for caches that remember it
    """
    body: bytes
    expires_at: float
    status: int | None = None


class TTLCache:
    """Key to (body, expiry) store with a default time-to-live."""

    def __init__(self, default_ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        """
        Initialize the cache.

        Args:
            default_ttl: TTL in seconds used when ``set`` is not given one
            clock: Monotonic clock, injectable for tests
        """
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._write_lock = threading.Lock()

    def get_entry(self, key: str) -> CacheEntry | None:
        """
        Return the live entry for ``key``, evicting it if it has expired.

        Args:
            key: Cache key (request path plus query string)

        Returns:
            The entry if present and fresh, None otherwise
        """
        entry = self._entries.get(key)
        if entry is None:
            return None

        if self._clock() < entry.expires_at:
            return entry

        with self._write_lock:
            # Only drop the entry we judged stale; a writer may have replaced it.
            if self._entries.get(key) is entry:
                del self._entries[key]
        return None

    def get(self, key: str) -> tuple[bytes | None, bool]:
        """
        Look up ``key``.

        Returns:
            ``(body, True)`` on a fresh hit, ``(None, False)`` otherwise
        """
        entry = self.get_entry(key)
        if entry is None:
            return None, False
        return entry.body, True

    def set(self, key: str, body: bytes, ttl: float | None = None, status: int | None = None) -> None:
        """
        Store ``body`` under ``key``.

        Args:
            key: Cache key
            body: Raw bytes to cache
            ttl: Seconds until expiry (defaults to ``default_ttl``)
            status: Optional HTTP status to remember alongside the body
        """
        expires_at = self._clock() + (self.default_ttl if ttl is None else ttl)
        with self._write_lock:
            self._entries[key] = CacheEntry(body=body, expires_at=expires_at, status=status)

    def clear(self) -> None:
        with self._write_lock:
            self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class NegativeCache:
    """Short-lived record that a request path recently failed everywhere."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._expiries: dict[str, float] = {}
        self._write_lock = threading.Lock()

    def mark(self, key: str) -> None:
        """Start (or restart) the backoff window for ``key``."""
        expires_at = self._clock() + self.ttl
        with self._write_lock:
            self._expiries[key] = expires_at
        logger.debug(f"Backing off {key} for {self.ttl}s")

    def check(self, key: str) -> bool:
        """Return True while ``key`` is inside its backoff window."""
        expires_at = self._expiries.get(key)
        if expires_at is None:
            return False

        if self._clock() < expires_at:
            return True

        with self._write_lock:
            if self._expiries.get(key) == expires_at:
                del self._expiries[key]
        return False

    def __len__(self) -> int:
        return len(self._expiries)
