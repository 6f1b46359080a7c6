"""
In-process notification dedup cache.

First dedup layer for push notifications: a time-windowed set of keys
claimed with insert-if-absent semantics before any I/O happens. It only
suppresses the noise of provider redeliveries arriving within seconds of
each other; the durable claim in the processing ledger stays the source
of truth.
"""

import logging
import time
from typing import Callable, List, Optional

from cachetools import TTLCache

logger = logging.getLogger(__name__)

DEFAULT_MAXSIZE = 10000


class NotificationDedupCache:
    """TTL-bounded set of recently claimed notification keys."""

    def __init__(self, ttl_seconds: float, maxsize: int = DEFAULT_MAXSIZE,
                 timer: Optional[Callable[[], float]] = None):
        """
        Args:
            ttl_seconds: How long a claimed key suppresses duplicates
            maxsize: Upper bound on tracked keys
            timer: Monotonic clock, injectable for tests
        """
        self.ttl_seconds = ttl_seconds
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=timer or time.monotonic)

    def claim(self, key: str) -> bool:
        """
        Insert the key if it is not already present.

        Returns:
            True if this caller claimed the key, False if it was already held
        """
        if key in self._cache:
            return False
        self._cache[key] = True
        return True

    def release(self, key: str) -> None:
        """Forget a key so a later delivery can claim it again."""
        self._cache.pop(key, None)

    def contains(self, key: str) -> bool:
        return key in self._cache

    def purge_expired(self) -> int:
        """
        Drop entries older than the TTL.

        Returns:
            Number of entries removed
        """
        removed = len(self._cache.expire())
        if removed:
            logger.debug(f"Purged {removed} expired dedup entries")
        return removed

    def keys(self) -> List[str]:
        self._cache.expire()
        return list(self._cache.keys())

    def __len__(self) -> int:
        self._cache.expire()
        return len(self._cache)
