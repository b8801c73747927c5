"""
Record-existence cache.

Owned by a single run (sync engine or converter) and cleared when the run
ends, so a record created mid-run is never reported as missing by a stale
entry from an earlier run.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger("op_env_manager.cache")

CacheKey = tuple[str, str]


class ItemCache:
    """Thread-safe map of (vault, record) -> exists."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[CacheKey, bool] = {}

    def get(self, key: CacheKey) -> Optional[bool]:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: CacheKey, exists: bool) -> None:
        with self._lock:
            self._entries[key] = exists

    def get_or_check(self, key: CacheKey, check: Callable[[], bool]) -> bool:
        """Return the cached answer for ``key``, calling ``check`` on a miss.

        ``check`` runs outside the lock; two threads missing on the same
        key may both call it, and the last answer wins.
        """
        cached = self.get(key)
        if cached is not None:
            logger.debug("Cache hit for %s/%s", *key)
            return cached
        exists = check()
        self.set(key, exists)
        return exists

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
