"""
Two-tier lookup result cache.

The in-process tier is small and short-lived (1 hour, 100 entries, oldest
evicted first); the durable tier lives in the DurableStore for 7 days.
Both tiers are keyed by ``normalize_key(name)``.

Store failures never reach the caller: a failed read is a miss and a failed
write leaves the in-process tier populated.
"""

from collections import OrderedDict
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from company_discovery.domain.discovery.models import CacheEntry, Candidate
from company_discovery.domain.discovery.normalizer import normalize_key
from company_discovery.domain.discovery.protocols import DurableStore
from company_discovery.utils.clock import Clock
from company_discovery.utils.logging import get_logger

logger = get_logger(__name__)

CACHE_KEY_PREFIX = "cache:"
HEALTH_PROBE_NAME = "__health_probe__"

# Names pre-fetched by warm-up runs.
COMMON_COMPANIES = (
    "Microsoft",
    "Apple",
    "Google",
    "Amazon",
    "Meta",
    "Netflix",
    "Tesla",
    "Spotify",
    "Uber",
    "Airbnb",
    "Salesforce",
    "Adobe",
    "Oracle",
    "IBM",
    "Intel",
)


@dataclass
class CacheStats:
    """
    Exact cache counters.

    Examples:
        >>> stats = CacheStats(memory_hits=3, durable_hits=1, misses=4)
        >>> stats.hit_rate
        0.5
    """

    memory_hits: int = 0
    durable_hits: int = 0
    misses: int = 0
    writes: int = 0
    evictions: int = 0
    store_errors: int = 0

    @property
    def hits(self) -> int:
        return self.memory_hits + self.durable_hits

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memory_hits": self.memory_hits,
            "durable_hits": self.durable_hits,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hit_rate, 4),
            "writes": self.writes,
            "evictions": self.evictions,
            "store_errors": self.store_errors,
        }


class DiscoveryCache:
    """
    Cache of provider results in front of the lookup provider.

    Example:
        >>> cache = DiscoveryCache(store, clock)
        >>> await cache.set("Acme", candidates)
        >>> await cache.get("  acme ") == candidates
        True
    """

    def __init__(
        self,
        store: DurableStore,
        clock: Clock,
        memory_ttl_seconds: int = 3600,
        max_memory_items: int = 100,
        durable_ttl_seconds: int = 7 * 24 * 3600,
    ):
        if max_memory_items < 1:
            raise ValueError("max_memory_items must be positive")
        self.store = store
        self.clock = clock
        self.memory_ttl = timedelta(seconds=memory_ttl_seconds)
        self.durable_ttl = timedelta(seconds=durable_ttl_seconds)
        self.max_memory_items = max_memory_items
        self._memory: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.stats = CacheStats()

    @staticmethod
    def _store_key(key: str) -> str:
        return f"{CACHE_KEY_PREFIX}{key}"

    @property
    def memory_size(self) -> int:
        return len(self._memory)

    def _remember(self, entry: CacheEntry) -> None:
        """Insert into the in-process tier as the newest entry."""
        self._memory.pop(entry.normalized_key, None)
        self._memory[entry.normalized_key] = entry
        while len(self._memory) > self.max_memory_items:
            evicted_key, _ = self._memory.popitem(last=False)
            self.stats.evictions += 1
            logger.debug("cache.evicted", key=evicted_key)

    def _memory_lookup(self, key: str) -> Optional[CacheEntry]:
        entry = self._memory.get(key)
        if entry is None:
            return None
        if entry.is_expired(self.clock.now()):
            del self._memory[key]
            return None
        return entry

    async def _durable_lookup(self, key: str) -> Optional[CacheEntry]:
        try:
            raw = await self.store.get(self._store_key(key))
        except Exception as e:
            self.stats.store_errors += 1
            logger.warning("cache.durable_read_failed", key=key, error=str(e))
            return None
        if raw is None:
            return None
        try:
            entry = CacheEntry.model_validate(raw)
        except ValueError as e:
            logger.warning("cache.durable_entry_invalid", key=key, error=str(e))
            return None
        if entry.is_expired(self.clock.now()):
            return None
        return entry

    async def get(self, name: str) -> Optional[List[Candidate]]:
        """
        Look up cached candidates for ``name``.

        Returns:
            The cached candidates, or None on a miss in both tiers.
        """
        key = normalize_key(name)
        if not key:
            return None

        entry = self._memory_lookup(key)
        if entry is not None:
            entry.hit_count += 1
            self.stats.memory_hits += 1
            logger.debug("cache.hit", key=key, tier="memory")
            return list(entry.candidates)

        entry = await self._durable_lookup(key)
        if entry is None:
            self.stats.misses += 1
            logger.debug("cache.miss", key=key)
            return None

        # A set() that landed while we awaited the store wins over this read.
        current = self._memory.get(key)
        if current is None or current.cached_at < entry.cached_at:
            now = self.clock.now()
            self._remember(
                entry.model_copy(
                    update={
                        "expires_at": min(now + self.memory_ttl, entry.expires_at),
                        "hit_count": entry.hit_count + 1,
                    }
                )
            )
        self.stats.durable_hits += 1
        logger.debug("cache.hit", key=key, tier="durable")
        return list(entry.candidates)

    async def get_fresh(self, name: str, max_age_seconds: float) -> Optional[List[Candidate]]:
        """
        Return cached candidates no older than ``max_age_seconds``.

        Used by the cached-result fallback; does not touch hit/miss counters.
        """
        key = normalize_key(name)
        if not key:
            return None
        now = self.clock.now()
        entry = self._memory_lookup(key) or await self._durable_lookup(key)
        if entry is None or entry.age_seconds(now) > max_age_seconds:
            return None
        return list(entry.candidates)

    def contains(self, name: str) -> bool:
        """True if the in-process tier holds a live entry for ``name``."""
        return self._memory_lookup(normalize_key(name)) is not None

    async def set(self, name: str, candidates: List[Candidate]) -> None:
        """Write ``candidates`` to both tiers with tier-specific expiry."""
        key = normalize_key(name)
        if not key:
            logger.debug("cache.set_skipped_empty_key")
            return

        now = self.clock.now()
        candidates = list(candidates)
        self._remember(
            CacheEntry(
                normalized_key=key,
                candidates=candidates,
                cached_at=now,
                expires_at=now + self.memory_ttl,
            )
        )
        self.stats.writes += 1

        durable_entry = CacheEntry(
            normalized_key=key,
            candidates=candidates,
            cached_at=now,
            expires_at=now + self.durable_ttl,
        )
        try:
            await self.store.set(
                self._store_key(key),
                durable_entry.model_dump(mode="json"),
                expires_at=durable_entry.expires_at,
            )
        except Exception as e:
            self.stats.store_errors += 1
            logger.warning("cache.durable_write_failed", key=key, error=str(e))

    async def invalidate(self, name: str) -> bool:
        """Drop ``name`` from both tiers. Returns True if anything was removed."""
        key = normalize_key(name)
        removed = self._memory.pop(key, None) is not None
        try:
            removed = await self.store.delete(self._store_key(key)) or removed
        except Exception as e:
            self.stats.store_errors += 1
            logger.warning("cache.durable_delete_failed", key=key, error=str(e))
        return removed

    def sweep_memory(self) -> int:
        """Remove expired in-process entries. Returns the number removed."""
        now = self.clock.now()
        expired = [key for key, entry in self._memory.items() if entry.is_expired(now)]
        for key in expired:
            del self._memory[key]
        if expired:
            logger.debug("cache.memory_swept", removed=len(expired))
        return len(expired)

    async def cleanup(self) -> int:
        """Delete durable entries whose expiry has passed. Returns the count removed."""
        try:
            removed = await self.store.delete_where(
                prefix=CACHE_KEY_PREFIX, expires_before=self.clock.now()
            )
        except Exception as e:
            self.stats.store_errors += 1
            logger.warning("cache.cleanup_failed", error=str(e))
            return 0
        logger.info("cache.cleanup_completed", removed=removed)
        return removed

    async def clear(self) -> None:
        """Empty both tiers."""
        self._memory.clear()
        try:
            await self.store.delete_where(prefix=CACHE_KEY_PREFIX)
        except Exception as e:
            self.stats.store_errors += 1
            logger.warning("cache.clear_failed", error=str(e))

    def missing(self, names: Iterable[str]) -> List[str]:
        """Names without a live in-process entry, de-duplicated by cache key."""
        seen = set()
        result = []
        for name in names:
            key = normalize_key(name)
            if key and key not in seen and not self.contains(name):
                seen.add(key)
                result.append(name)
        return result

    async def probe(self) -> bool:
        """
        Write, read back and delete a marker entry in the durable tier.

        The in-process tier and the counters are left untouched. Store errors
        propagate to the caller.
        """
        now = self.clock.now()
        marker = CacheEntry(
            normalized_key=normalize_key(HEALTH_PROBE_NAME),
            candidates=[
                Candidate(
                    url="https://example.invalid/health",
                    display_name="health",
                    confidence=1.0,
                    source="probe",
                )
            ],
            cached_at=now,
            expires_at=now + self.memory_ttl,
        )
        store_key = self._store_key(marker.normalized_key)
        await self.store.set(store_key, marker.model_dump(mode="json"), expires_at=marker.expires_at)
        try:
            raw = await self.store.get(store_key)
        finally:
            await self.store.delete(store_key)
        return raw is not None and CacheEntry.model_validate(raw) == marker

    def get_stats(self) -> Dict[str, Any]:
        stats = self.stats.to_dict()
        stats.update(
            {
                "memory_size": len(self._memory),
                "max_memory_items": self.max_memory_items,
                "memory_ttl_seconds": int(self.memory_ttl.total_seconds()),
                "durable_ttl_seconds": int(self.durable_ttl.total_seconds()),
            }
        )
        return stats
