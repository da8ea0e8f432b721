"""
Per-instance TTL cache of recent operation outcomes.
"""

import math
from dataclasses import dataclass
from typing import Dict, Optional

from shared.logging import get_logger
from ..domain.decisions import OperationResult


@dataclass
class CacheEntry:
    """One cached outcome. Replaced wholesale on ``put``."""

    key: str
    payload: OperationResult
    created_at: float
    last_access_at: float
    access_count: int
    ttl_ms: int

    def age_ms(self, now: float) -> float:
        return now - self.created_at

    def is_fresh(self, now: float) -> bool:
        return now - self.created_at < self.ttl_ms


class TTLCache:
    """Keyed store of recent outcomes with per-entry TTL and LRU-style eviction.

    Expired entries are treated as absent by ``get`` but only removed by
    ``purge_expired`` or ``evict``.
    """

    def __init__(self, ttl_ms: int, failure_ttl_ms: Optional[int] = None,
                 max_size: int = 100, eviction_fraction: float = 0.3):
        self.ttl_ms = ttl_ms
        self.failure_ttl_ms = failure_ttl_ms or ttl_ms
        self.max_size = max_size
        self.eviction_fraction = eviction_fraction
        self.logger = get_logger("admission.ttl_cache")
        self._entries: Dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def ttl_for(self, payload: OperationResult) -> int:
        return self.ttl_ms if payload.success else self.failure_ttl_ms

    def get(self, key: str, now: float) -> Optional[CacheEntry]:
        """Return the fresh entry for ``key`` and mark it accessed, else None."""
        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(now):
            return None

        entry.last_access_at = now
        entry.access_count += 1
        return entry

    def put(self, key: str, payload: OperationResult, now: float,
            created_at: Optional[float] = None) -> CacheEntry:
        """Insert or overwrite the entry for ``key``.

        ``created_at`` lets a caller warm the cache with an outcome produced
        earlier (e.g. read from the dedupe store) without extending its life.
        """
        entry = CacheEntry(
            key=key,
            payload=payload,
            created_at=now if created_at is None else created_at,
            last_access_at=now,
            access_count=1,
            ttl_ms=self.ttl_for(payload),
        )
        self._entries[key] = entry
        return entry

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def purge_expired(self, now: float) -> int:
        """Drop every entry past its TTL. Returns the number removed."""
        expired = [key for key, entry in self._entries.items() if not entry.is_fresh(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def evict(self, max_size: Optional[int] = None) -> int:
        """Shrink an oversize cache by dropping least recently accessed entries.

        Only acts when the cache holds more than ``max_size`` entries; it then
        keeps at most ``floor(max_size * (1 - eviction_fraction))`` of the most
        recently accessed ones. Returns the number removed.
        """
        limit = self.max_size if max_size is None else max_size
        if len(self._entries) <= limit:
            return 0

        target = math.floor(limit * (1 - self.eviction_fraction))
        by_access = sorted(self._entries.values(), key=lambda entry: entry.last_access_at)
        victims = by_access[:len(by_access) - target]
        for entry in victims:
            del self._entries[entry.key]

        self.logger.debug(
            "Evicted cache entries",
            evicted=len(victims),
            remaining=len(self._entries),
            max_size=limit
        )
        return len(victims)

    def get_stats(self) -> Dict[str, int]:
        return {
            "entries": len(self._entries),
            "max_size": self.max_size,
            "ttl_ms": self.ttl_ms,
            "failure_ttl_ms": self.failure_ttl_ms,
        }
