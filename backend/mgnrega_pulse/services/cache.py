"""
In-process TTL cache with hit/miss statistics.

Values are stored as-is, without copying. Callers must not mutate a value
returned by ``get`` if they expect later reads to see the original state.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheTTL:
    HOT: int = 300               # current-period data
    HISTORICAL: int = 3600
    ENTITY_LIST: int = 86400
    GEO_LOOKUP: int = 604800
    COMPARISON: int = 1800

    @classmethod
    def from_settings(cls, settings) -> "CacheTTL":
        return cls(
            HOT=settings.TTL_HOT,
            HISTORICAL=settings.TTL_HISTORICAL,
            ENTITY_LIST=settings.TTL_ENTITY_LIST,
            GEO_LOOKUP=settings.TTL_GEO_LOOKUP,
            COMPARISON=settings.TTL_COMPARISON,
        )


@dataclass
class CacheEntry:
    value: Any
    expires_at: Optional[float]   # None = never

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


def glob_to_regex(pattern: str) -> "re.Pattern":
    """``*`` matches any run of characters; everything else is literal."""
    return re.compile(".*".join(re.escape(piece) for piece in pattern.split("*")), re.DOTALL)


class TierCache:
    def __init__(self, default_ttl: int = 300, clock: Optional[Callable[[], float]] = None):
        self.default_ttl = default_ttl
        self.clock = clock or time.monotonic
        self._store: Dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0
        self.upstream_calls = 0
        self.evictions = 0

    def get(self, key: str) -> Optional[Any]:
        entry = self._store.get(key)
        if entry is not None and entry.expired(self.clock()):
            self._evict(key)
            entry = None
        if entry is None:
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        expires_at = self.clock() + ttl if ttl and ttl > 0 else None
        self._store[key] = CacheEntry(value, expires_at)

    def delete(self, key: str) -> bool:
        return self._store.pop(key, None) is not None

    def delete_matching(self, pattern: str) -> int:
        regex = glob_to_regex(pattern)
        matched = [k for k in self._store if regex.fullmatch(k)]
        for key in matched:
            del self._store[key]
        logger.info("Invalidated %d cache keys matching %s", len(matched), pattern)
        return len(matched)

    def flush(self) -> None:
        self._store.clear()
        logger.info("Cache cleared")

    def list_keys(self) -> List[str]:
        now = self.clock()
        return [k for k, entry in self._store.items() if not entry.expired(now)]

    def sweep(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self.clock()
        expired = [k for k, entry in self._store.items() if entry.expired(now)]
        for key in expired:
            self._evict(key)
        if expired:
            logger.debug("Swept %d expired cache entries", len(expired))
        return len(expired)

    def increment_upstream_calls(self) -> None:
        self.upstream_calls += 1

    def hit_rate(self):
        total = self.hits + self.misses
        if total == 0:
            return 0
        return f"{self.hits / total * 100:.2f}"

    def stats(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "upstreamCalls": self.upstream_calls,
            "evictions": self.evictions,
            "hitRate": self.hit_rate(),
            "keyCount": len(self.list_keys()),
        }

    def _evict(self, key: str) -> None:
        if self._store.pop(key, None) is not None:
            self.evictions += 1
