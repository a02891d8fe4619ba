"""
CacheResolutionPolicy - serve from the server cache, revalidate, or load live.

Per request:
- FRESH: entry younger than the freshness threshold, returned as is
- STALE: entry older than the configured threshold, returned at once while one
  background refresh per key reloads and rewrites it (stale-while-revalidate)
- MISS: no entry, or an entry older than a threshold passed by the caller,
  loaded live, stored, returned

When the store is unreachable every request degrades to a live load.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, Sequence

from loguru import logger

from marketsync.datastore.store import ServerCacheStore, StoredValue
from marketsync.enrichment.types import EnrichmentKey
from marketsync.services.deduplicator import RequestDeduplicator
from marketsync.services.errors import CacheUnavailableError, MarketplaceError
from marketsync.settings import global_settings
from marketsync.utils import Clock, utc_now

Loader = Callable[[EnrichmentKey], Awaitable[StoredValue]]


class CacheState(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    MISS = "miss"


@dataclass
class Resolution:
    """Outcome of resolving one key."""

    key: EnrichmentKey
    source: Literal["cache", "live"]
    value: StoredValue
    stored_at: datetime
    state: CacheState

    @property
    def records(self) -> list[Any]:
        return self.value if isinstance(self.value, list) else [self.value]


@dataclass
class ResolverStats:
    fresh: int = 0
    stale: int = 0
    misses: int = 0
    refreshes_failed: int = 0
    store_unavailable: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "fresh": self.fresh,
            "stale": self.stale,
            "misses": self.misses,
            "refreshes_failed": self.refreshes_failed,
            "store_unavailable": self.store_unavailable,
        }


class CacheResolutionPolicy:
    """
    Decides per key between the server cache store and a live load.

    Usage:
        policy = CacheResolutionPolicy(store, loader)
        resolution = await policy.resolve(key)
        refreshed = await policy.resolve(key, freshness_threshold=timedelta(0))
    """

    def __init__(
        self,
        store: ServerCacheStore,
        loader: Loader,
        freshness_threshold: timedelta | None = None,
        ttl: timedelta | None = None,
        clock: Clock = utc_now,
        debug: bool = False,
    ):
        self.store = store
        self._loader = loader
        if freshness_threshold is None:
            freshness_threshold = timedelta(
                minutes=global_settings.freshness_threshold_minutes
            )
        self._threshold = freshness_threshold
        self._ttl = ttl
        self._clock = clock
        self._debug = debug
        self._loads = RequestDeduplicator(debug=debug)
        self._refreshes = RequestDeduplicator(debug=debug)
        self._stats = ResolverStats()

    @property
    def freshness_threshold(self) -> timedelta:
        return self._threshold

    async def resolve(
        self, key: EnrichmentKey, freshness_threshold: timedelta | None = None
    ) -> Resolution:
        """
        Resolve ``key`` against the store.

        Args:
            key: Record or listing to resolve
            freshness_threshold: Caller override of the configured threshold.
                An entry at or beyond it is reloaded live instead of being
                served stale; ``<= 0`` always loads live

        Raises:
            MarketplaceError: The live load failed (MISS path only)
        """
        threshold = self._threshold if freshness_threshold is None else freshness_threshold

        if threshold <= timedelta(0):
            self._log(f"FORCED MISS: {key}")
            return await self._resolve_live(key)

        try:
            entry = await self.store.get(key)
        except CacheUnavailableError as e:
            self._stats.store_unavailable += 1
            logger.warning(f"Server cache unavailable, loading {key} live: {e}")
            return await self._resolve_live(key)

        if entry is None:
            self._log(f"MISS: {key}")
            return await self._resolve_live(key)

        if self._clock() - entry.stored_at < threshold:
            self._stats.fresh += 1
            self._log(f"FRESH: {key}")
            return Resolution(key, "cache", entry.value, entry.stored_at, CacheState.FRESH)

        if freshness_threshold is not None:
            self._log(f"EXPIRED FOR CALLER: {key}, loading live")
            return await self._resolve_live(key)

        self._stats.stale += 1
        self._log(f"STALE: {key}, scheduling refresh")
        await self._refreshes.start(str(key), lambda: self._refresh(key))
        return Resolution(key, "cache", entry.value, entry.stored_at, CacheState.STALE)

    async def resolve_many(
        self,
        keys: Sequence[EnrichmentKey],
        freshness_threshold: timedelta | None = None,
    ) -> dict[EnrichmentKey, Resolution | MarketplaceError]:
        """Resolve keys concurrently; a failed key never fails its siblings."""
        outcomes = await asyncio.gather(
            *(self.resolve(key, freshness_threshold) for key in keys),
            return_exceptions=True,
        )
        results: dict[EnrichmentKey, Resolution | MarketplaceError] = {}
        for key, outcome in zip(keys, outcomes):
            if isinstance(outcome, BaseException) and not isinstance(outcome, MarketplaceError):
                raise outcome
            results[key] = outcome
        return results

    async def _resolve_live(self, key: EnrichmentKey) -> Resolution:
        self._stats.misses += 1
        value, stored_at = await self._loads.dedupe(str(key), lambda: self._load_and_store(key))
        return Resolution(key, "live", value, stored_at, CacheState.MISS)

    async def _load_and_store(self, key: EnrichmentKey) -> tuple[StoredValue, datetime]:
        value = await self._loader(key)
        stored_at = self._clock()
        try:
            await self.store.put(key, value, self._ttl)
        except CacheUnavailableError as e:
            self._stats.store_unavailable += 1
            logger.warning(f"Could not store {key} in the server cache: {e}")
        return value, stored_at

    async def _refresh(self, key: EnrichmentKey) -> None:
        try:
            await self._loads.dedupe(str(key), lambda: self._load_and_store(key))
            self._log(f"REFRESHED: {key}")
        except MarketplaceError as e:
            self._stats.refreshes_failed += 1
            logger.warning(f"Background refresh of {key} failed ({e.kind}): {e}")
        except Exception as e:
            self._stats.refreshes_failed += 1
            logger.error(f"Background refresh of {key} crashed: {type(e).__name__}: {e}")

    def is_refreshing(self, key: EnrichmentKey) -> bool:
        return self._refreshes.is_in_flight(str(key))

    async def wait_for_refreshes(self) -> None:
        """Wait for every scheduled background refresh to settle."""
        await self._refreshes.wait_all()

    async def close(self) -> None:
        cancelled = await self._refreshes.cancel_all()
        cancelled += await self._loads.cancel_all()
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending cache loads")

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats.to_dict(),
            "loads": self._loads.get_stats().to_dict(),
            "refreshes": self._refreshes.get_stats().to_dict(),
        }

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[Resolver] {message}")
