"""In-memory TTL cache for studylib.

Backs the access-token blacklist: a revoked token's ``jti`` is kept until the
token would have expired, after which the entry is no longer needed because
the signature check rejects the token anyway.

Entries are evicted lazily on read and when the cache is full (expired entries
first, then least recently used).
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

from .metrics import metrics

logger = logging.getLogger(__name__)

TOKEN_BLACKLIST_SIZE = int(os.environ.get("STUDYLIB_TOKEN_BLACKLIST_SIZE", 100_000))


@dataclass
class CacheEntry:
    """A single cache entry with expiration."""

    value: Any
    expires_at: float

    def is_expired(self, now: float | None = None) -> bool:
        return (now or time.time()) > self.expires_at


@dataclass
class TTLCache:
    """Thread-safe TTL cache with LRU eviction.

    Args:
        name: Name of the cache (for metrics)
        default_ttl: Default TTL in seconds (0 = no expiration, rely on LRU)
        max_size: Maximum number of entries
    """

    name: str
    default_ttl: float = 3600.0
    max_size: int = 1000
    _data: OrderedDict[str, CacheEntry] = field(default_factory=OrderedDict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def get(self, key: str) -> tuple[bool, Any]:
        """Get a value from the cache.

        Returns:
            (hit, value) tuple. If hit is False, value is None.
        """
        with self._lock:
            entry = self._data.get(key)
            if entry is None or entry.is_expired():
                if entry is not None:
                    del self._data[key]
                metrics.record_cache_miss(self.name)
                return False, None

            self._data.move_to_end(key)
            metrics.record_cache_hit(self.name)
            return True, entry.value

    def contains(self, key: str) -> bool:
        hit, _ = self.get(key)
        return hit

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Set a value in the cache.

        Args:
            key: Cache key
            value: Value to cache
            ttl: TTL in seconds (uses default_ttl if not specified, 0 = no expiration)
        """
        if ttl is None:
            ttl = self.default_ttl
        expires_at = time.time() + ttl if ttl > 0 else float("inf")

        with self._lock:
            if key not in self._data and len(self._data) >= self.max_size:
                self._evict()
            self._data[key] = CacheEntry(value=value, expires_at=expires_at)
            self._data.move_to_end(key)

    def delete(self, key: str) -> bool:
        """Delete a key from the cache. Returns True if the key existed."""
        with self._lock:
            return self._data.pop(key, None) is not None

    def clear(self) -> None:
        """Clear all entries from the cache."""
        with self._lock:
            self._data.clear()

    def _evict(self) -> None:
        """Make room for one entry. Must be called with lock held."""
        now = time.time()
        for key in [k for k, v in self._data.items() if v.is_expired(now)]:
            del self._data[key]

        while len(self._data) >= self.max_size:
            oldest_key, _ = self._data.popitem(last=False)
            logger.warning(f"Cache {self.name} full, evicting {oldest_key}")

    def stats(self) -> dict:
        """Get cache statistics."""
        with self._lock:
            return {
                "size": len(self._data),
                "max_size": self.max_size,
                "ttl_seconds": self.default_ttl,
            }


token_blacklist = TTLCache(name="token_blacklist", default_ttl=0, max_size=TOKEN_BLACKLIST_SIZE)


def revoke_token_id(jti: str, ttl: float) -> None:
    """Blacklist a token id for ``ttl`` seconds."""
    token_blacklist.set(jti, True, ttl=ttl)


def is_token_revoked(jti: str) -> bool:
    return token_blacklist.contains(jti)
