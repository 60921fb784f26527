"""
Cache availability checker.

Answers "is the local index for source kind X populated?" for the router.

Design:
  - Memoizes the row-count probe per source kind for `ttl` seconds
  - Thread-safe with a lock
  - A failing probe counts as "not populated" and is not memoized

Usage:
    checker = CacheAvailabilityChecker(store, ttl=60)
    if checker.is_populated("aggregator"):
        ...
    checker.invalidate()   # after a sync run finishes
"""

import logging
import threading
import time
from typing import Dict, Optional, Tuple

from sources.errors import IndexUnavailable

logger = logging.getLogger(__name__)


class CacheAvailabilityChecker:
    """Thread-safe TTL memo over CatalogStore.count()."""

    def __init__(self, store, ttl: float = 60):
        self.store = store
        self.ttl = ttl
        self._entries: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def row_count(self, kind: str) -> Optional[int]:
        """Cached row count, or None when the store cannot be probed."""
        now = time.time()
        with self._lock:
            entry = self._entries.get(kind)
            if entry and now - entry[1] <= self.ttl:
                return entry[0]

        try:
            count = self.store.count(kind)
        except IndexUnavailable as e:
            logger.warning(f"Cache probe for {kind} failed: {e}")
            return None

        with self._lock:
            self._entries[kind] = (count, time.time())
        return count

    def is_populated(self, kind: str) -> bool:
        count = self.row_count(kind)
        return bool(count)

    def invalidate(self, kind: Optional[str] = None) -> None:
        with self._lock:
            if kind is None:
                self._entries.clear()
            else:
                self._entries.pop(kind, None)
