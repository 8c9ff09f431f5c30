"""
Fetch Result Caching

Bounded in-process TTL cache for raw provider fetches. Cost Explorer bills
per request, so a retried ingestion for the same account and window should
not pay twice within the TTL.

The cache is constructed once per worker process and injected into the
ingestion path. There is no module-level instance.
"""

import asyncio
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

import structlog

logger = structlog.get_logger()


class TTLCache:
    """
    LRU map with per-entry expiry.

    Note: Not shared across processes. Each worker owns its own instance.
    """

    def __init__(
        self,
        ttl_seconds: float = 900,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._store: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self.misses += 1
                return None

            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._store[key]
                self.misses += 1
                return None

            self._store.move_to_end(key)
            self.hits += 1
            logger.debug("cache_hit", key=key)
            return value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        async with self._lock:
            self._store[key] = (value, self._clock() + ttl)
            self._store.move_to_end(key)
            while len(self._store) > self.max_entries:
                evicted, _ = self._store.popitem(last=False)
                logger.debug("cache_evicted", key=evicted)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def delete_pattern(self, pattern: str) -> int:
        # Simple pattern matching (prefix only)
        prefix = pattern.rstrip("*")
        async with self._lock:
            to_delete = [k for k in self._store if k.startswith(prefix)]
            for k in to_delete:
                del self._store[k]
        return len(to_delete)

    async def clear(self) -> None:
        async with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        return len(self._store)

    def stats(self) -> Dict[str, int]:
        return {"entries": len(self._store), "hits": self.hits, "misses": self.misses}
