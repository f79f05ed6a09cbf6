"""
Time-bounded cache for the derived read views.

Four regions, each with a fixed TTL:
- repository_status: map keyed by repository path
- commit_history: single list, most recent first
- statistics: single aggregate
- unpushed_commits: single aggregate

An entry is only served while ``now - timestamp < ttl``. Expired entries are
evicted on read so callers always fall back to recomputation.
"""

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Generic, Optional, TypeVar, Union

T = TypeVar('T')


class CacheRegion(str, Enum):
    """Cache regions backing the engine read APIs."""
    REPOSITORY_STATUS = "repositoryStatus"
    COMMIT_HISTORY = "commitHistory"
    STATISTICS = "statistics"
    UNPUSHED_COMMITS = "unpushedCommits"


# Policy constants, in seconds
CACHE_TTLS: Dict[CacheRegion, float] = {
    CacheRegion.REPOSITORY_STATUS: 30.0,
    CacheRegion.COMMIT_HISTORY: 60.0,
    CacheRegion.STATISTICS: 300.0,
    CacheRegion.UNPUSHED_COMMITS: 30.0,
}

KEYED_REGIONS = {CacheRegion.REPOSITORY_STATUS}

_SINGLE = "__single__"


@dataclass
class CacheEntry(Generic[T]):
    """Cached value and the clock reading at which it was stored."""
    data: T
    timestamp: float


def coerce_region(region: Union[CacheRegion, str]) -> CacheRegion:
    """Accept either the enum or its wire name (``commitHistory``) or member name."""
    if isinstance(region, CacheRegion):
        return region
    try:
        return CacheRegion(region)
    except ValueError:
        try:
            return CacheRegion[region.upper()]
        except KeyError:
            raise ValueError(f"Unknown cache region: {region}") from None


class TTLCache:
    """Per-region TTL cache with one lock per region."""

    def __init__(
        self,
        ttls: Optional[Dict[CacheRegion, float]] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.ttls = dict(CACHE_TTLS)
        if ttls:
            self.ttls.update(ttls)
        self._clock = clock
        self._regions: Dict[CacheRegion, Dict[str, CacheEntry]] = {
            region: {} for region in CacheRegion
        }
        self._locks = {region: threading.RLock() for region in CacheRegion}
        self.created_at = datetime.now(timezone.utc)
        self.last_updated: Optional[datetime] = None

    @staticmethod
    def _key(region: CacheRegion, key: Optional[str]) -> str:
        if region in KEYED_REGIONS:
            if key is None:
                raise ValueError(f"Region {region.value} requires a key")
            return key
        return _SINGLE

    def _is_fresh(self, region: CacheRegion, entry: CacheEntry) -> bool:
        return self._clock() - entry.timestamp < self.ttls[region]

    def get(self, region: Union[CacheRegion, str], key: Optional[str] = None) -> Optional[Any]:
        """Return the cached value, or None when absent or expired."""
        region = coerce_region(region)
        slot = self._key(region, key)
        with self._locks[region]:
            entry = self._regions[region].get(slot)
            if entry is None:
                return None
            if not self._is_fresh(region, entry):
                del self._regions[region][slot]
                return None
            return entry.data

    def set(self, region: Union[CacheRegion, str], value: Any, key: Optional[str] = None) -> None:
        region = coerce_region(region)
        slot = self._key(region, key)
        with self._locks[region]:
            self._regions[region][slot] = CacheEntry(data=value, timestamp=self._clock())
            self.last_updated = datetime.now(timezone.utc)

    def invalidate(
        self,
        region: Optional[Union[CacheRegion, str]] = None,
        key: Optional[str] = None
    ) -> None:
        """Clear one key, one region, or every region when called bare."""
        if region is None:
            for each in CacheRegion:
                with self._locks[each]:
                    self._regions[each].clear()
            return

        region = coerce_region(region)
        with self._locks[region]:
            if key is not None and region in KEYED_REGIONS:
                self._regions[region].pop(key, None)
            else:
                self._regions[region].clear()

    def size(self, region: Union[CacheRegion, str]) -> int:
        """Number of fresh entries in a region."""
        region = coerce_region(region)
        with self._locks[region]:
            return sum(
                1 for entry in self._regions[region].values()
                if self._is_fresh(region, entry)
            )

    def status(self) -> Dict[str, int]:
        return {region.value: self.size(region) for region in CacheRegion}


__all__ = ['CacheRegion', 'CACHE_TTLS', 'KEYED_REGIONS', 'CacheEntry', 'coerce_region', 'TTLCache']
