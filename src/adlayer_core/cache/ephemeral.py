"""Process-local short-TTL cache for recent query results."""
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional


logger = logging.getLogger(__name__)


CacheKey = tuple[str, str, str, str]


@dataclass(frozen=True)
class CacheEntry:
    """Cached payload with both monotonic and wall-clock timestamps."""

    payload: Any
    cached_at: float
    stored_at: datetime

    def age(self, now: float) -> float:
        return now - self.cached_at

    @property
    def is_empty(self) -> bool:
        if self.payload is None:
            return True
        if isinstance(self.payload, (list, dict)):
            return len(self.payload) == 0
        return False


class EphemeralCache:
    """Bounded LRU cache keyed by (store_id, endpoint, scope_id, variant).

    TTL is supplied by the reader, so one instance serves endpoints with
    different freshness windows. Once max_entries is reached the least
    recently used entry is evicted.
    """

    def __init__(
        self,
        max_entries: int = 512,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()
        self._hits = 0
        self._misses = 0

    def get(self, key: CacheKey, ttl_s: float) -> Optional[CacheEntry]:
        """Return the entry if present and younger than ttl_s."""
        entry = self._entries.get(key)
        if entry is None or entry.age(self._clock()) >= ttl_s:
            self._misses += 1
            return None
        self._entries.move_to_end(key)
        self._hits += 1
        return entry

    def peek(self, key: CacheKey) -> Optional[CacheEntry]:
        """Return the entry regardless of age."""
        return self._entries.get(key)

    def set(self, key: CacheKey, payload: Any) -> None:
        self._entries[key] = CacheEntry(
            payload=payload,
            cached_at=self._clock(),
            stored_at=datetime.now(timezone.utc),
        )
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted ephemeral cache entry %s", evicted)

    def find_freshest(
        self, store_id: str, endpoint: str, scope_id: str
    ) -> Optional[CacheEntry]:
        """Return the most recently cached non-empty entry for a scope, any variant, any age."""
        best: Optional[CacheEntry] = None
        for (s, e, scope, _variant), entry in self._entries.items():
            if (s, e, scope) != (store_id, endpoint, scope_id) or entry.is_empty:
                continue
            if best is None or entry.cached_at > best.cached_at:
                best = entry
        return best

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "entries": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 4) if total else 0.0,
        }
