"""
Client-side cache tiers.

Features:
- CacheTier protocol so any tier can be swapped for a fake
- MemoryTier: per-process map with LRU eviction
- PersistentTier: one JSON file per keyset, survives restarts
- ClientCache: memory then persistent, written together, invalidated by account
- TTL checked lazily at read time; expired entries are purged before a miss is reported

Lookups are by Keyset (resource type + accounts + date range). Only an exact
keyset match is a hit; no sub-range stitching is attempted.
"""

import asyncio
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from loguru import logger
from pydantic import TypeAdapter, ValidationError

from marketsync.enrichment.types import Keyset
from marketsync.settings import global_settings
from marketsync.utils import Clock, utc_now

T = TypeVar("T")

PERSISTENT_FORMAT_VERSION = 1


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with metadata."""

    key: Any
    value: T
    stored_at: datetime
    ttl: timedelta

    def age(self, now: datetime) -> timedelta:
        return now - self.stored_at

    def is_valid(self, now: datetime) -> bool:
        """Entry is usable while younger than its TTL."""
        return now - self.stored_at < self.ttl


class CacheTier(Protocol[T]):
    """Cache tier keyed by Keyset."""

    @property
    def name(self) -> str: ...

    @property
    def default_ttl(self) -> timedelta: ...

    async def get(self, keyset: Keyset) -> CacheEntry[T] | None: ...

    async def set(self, keyset: Keyset, value: T, ttl: timedelta | None = None) -> None: ...

    async def invalidate(self, account_ids: list[str]) -> int: ...

    async def clear(self) -> None: ...


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    expired: int = 0
    evictions: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "expired": self.expired,
            "evictions": self.evictions,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


class MemoryTier(Generic[T]):
    """
    In-process tier, lifetime of the process (the page session).

    Usage:
        tier = MemoryTier(max_size=100, default_ttl=timedelta(minutes=10))
        await tier.set(keyset, batch)
        entry = await tier.get(keyset)
    """

    def __init__(
        self,
        max_size: int | None = None,
        default_ttl: timedelta | None = None,
        clock: Clock = utc_now,
        debug: bool = False,
    ):
        self._memory: dict[str, CacheEntry[T]] = {}
        self._max_size = max_size or global_settings.memory_cache_max_size
        if default_ttl is None:
            default_ttl = timedelta(minutes=global_settings.memory_cache_ttl_minutes)
        self._default_ttl = default_ttl
        self._clock = clock
        self._debug = debug
        self._lock = asyncio.Lock()
        self._stats = CacheStats()

    @property
    def name(self) -> str:
        return "memory"

    @property
    def default_ttl(self) -> timedelta:
        return self._default_ttl

    async def get(self, keyset: Keyset) -> CacheEntry[T] | None:
        key = keyset.cache_key
        async with self._lock:
            entry = self._memory.get(key)
            if entry is None:
                self._stats.misses += 1
                self._log(f"MISS: {key}")
                return None

            if not entry.is_valid(self._clock()):
                del self._memory[key]
                self._stats.expired += 1
                self._stats.misses += 1
                self._log(f"EXPIRED: {key}")
                return None

            self._stats.hits += 1
            self._log(f"HIT: {key}")
            return entry

    async def set(self, keyset: Keyset, value: T, ttl: timedelta | None = None) -> None:
        key = keyset.cache_key
        if ttl is None:
            ttl = self._default_ttl
        entry = CacheEntry(key=keyset, value=value, stored_at=self._clock(), ttl=ttl)

        async with self._lock:
            if len(self._memory) >= self._max_size and key not in self._memory:
                self._evict_oldest()
            self._memory[key] = entry
            self._log(f"SET: {key} (TTL: {ttl.total_seconds()}s)")

    async def invalidate(self, account_ids: list[str]) -> int:
        """Drop every keyset that involves any of ``account_ids``."""
        async with self._lock:
            doomed = [
                key for key, entry in self._memory.items() if entry.key.involves(account_ids)
            ]
            for key in doomed:
                del self._memory[key]
            if doomed:
                self._log(f"INVALIDATE: {len(doomed)} entries for {account_ids}")
            return len(doomed)

    async def clear(self) -> None:
        async with self._lock:
            count = len(self._memory)
            self._memory.clear()
            self._log(f"CLEAR: {count} entries removed")

    def _evict_oldest(self) -> None:
        if not self._memory:
            return
        oldest_key = min(self._memory, key=lambda k: self._memory[k].stored_at)
        del self._memory[oldest_key]
        self._stats.evictions += 1
        self._log(f"EVICT: {oldest_key}")

    def get_stats(self) -> CacheStats:
        self._stats.size = len(self._memory)
        self._stats.max_size = self._max_size
        return self._stats

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[MemoryTier] {message}")


class PersistentTier(Generic[T]):
    """
    Durable local tier: one JSON envelope per keyset under ``directory``.

    Envelope: ``{"version", "cache_key", "resource_type", "account_ids",
    "stored_at", "ttl_seconds", "value"}``. Unreadable, corrupt or
    version-mismatched files are treated as misses and removed.
    """

    def __init__(
        self,
        directory: str | Path | None = None,
        value_adapter: TypeAdapter | None = None,
        default_ttl: timedelta | None = None,
        clock: Clock = utc_now,
        debug: bool = False,
    ):
        self._directory = Path(directory or global_settings.persistent_cache_dir)
        self._adapter = value_adapter or TypeAdapter(Any)
        if default_ttl is None:
            default_ttl = timedelta(minutes=global_settings.persistent_cache_ttl_minutes)
        self._default_ttl = default_ttl
        self._clock = clock
        self._debug = debug
        self._lock = asyncio.Lock()
        self._stats = CacheStats()

    @property
    def name(self) -> str:
        return "persistent"

    @property
    def default_ttl(self) -> timedelta:
        return self._default_ttl

    def _path_for(self, cache_key: str) -> Path:
        digest = hashlib.sha1(cache_key.encode()).hexdigest()
        return self._directory / f"{digest}.json"

    def _read(self, path: Path) -> dict[str, Any] | None:
        try:
            envelope = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Dropping unreadable cache file {path.name}: {e}")
            path.unlink(missing_ok=True)
            return None
        if not isinstance(envelope, dict) or envelope.get("version") != PERSISTENT_FORMAT_VERSION:
            self._log(f"VERSION MISMATCH: {path.name}")
            path.unlink(missing_ok=True)
            return None
        return envelope

    async def get(self, keyset: Keyset) -> CacheEntry[T] | None:
        key = keyset.cache_key
        path = self._path_for(key)
        async with self._lock:
            envelope = self._read(path)
            if envelope is None or envelope.get("cache_key") != key:
                self._stats.misses += 1
                self._log(f"MISS: {key}")
                return None

            try:
                stored_at = datetime.fromisoformat(envelope["stored_at"])
                ttl = timedelta(seconds=float(envelope["ttl_seconds"]))
                value = self._adapter.validate_python(envelope["value"])
            except (KeyError, TypeError, ValueError, ValidationError) as e:
                logger.warning(f"Dropping corrupt cache entry {key}: {e}")
                path.unlink(missing_ok=True)
                self._stats.misses += 1
                return None

            entry = CacheEntry(key=keyset, value=value, stored_at=stored_at, ttl=ttl)
            if not entry.is_valid(self._clock()):
                path.unlink(missing_ok=True)
                self._stats.expired += 1
                self._stats.misses += 1
                self._log(f"EXPIRED: {key}")
                return None

            self._stats.hits += 1
            self._log(f"HIT: {key}")
            return entry

    async def set(self, keyset: Keyset, value: T, ttl: timedelta | None = None) -> None:
        key = keyset.cache_key
        if ttl is None:
            ttl = self._default_ttl
        envelope = {
            "version": PERSISTENT_FORMAT_VERSION,
            "cache_key": key,
            "resource_type": keyset.resource_type.value,
            "account_ids": list(keyset.account_ids),
            "stored_at": self._clock().isoformat(),
            "ttl_seconds": ttl.total_seconds(),
            "value": self._adapter.dump_python(value, mode="json"),
        }
        path = self._path_for(key)
        async with self._lock:
            self._directory.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps(envelope, ensure_ascii=False), encoding="utf-8")
            tmp.replace(path)
            self._log(f"SET: {key} (TTL: {ttl.total_seconds()}s)")

    async def invalidate(self, account_ids: list[str]) -> int:
        """Remove every stored keyset that involves any of ``account_ids``."""
        wanted = set(account_ids)
        removed = 0
        async with self._lock:
            if not self._directory.exists():
                return 0
            for path in self._directory.glob("*.json"):
                envelope = self._read(path)
                if envelope is None:
                    continue
                if wanted & set(envelope.get("account_ids") or []):
                    path.unlink(missing_ok=True)
                    removed += 1
        if removed:
            self._log(f"INVALIDATE: {removed} files for {account_ids}")
        return removed

    async def clear(self) -> None:
        async with self._lock:
            if not self._directory.exists():
                return
            for path in self._directory.glob("*.json"):
                path.unlink(missing_ok=True)

    def get_stats(self) -> CacheStats:
        return self._stats

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[PersistentTier] {message}")


class ClientCache(Generic[T]):
    """
    The two client tiers, consulted in order before any request goes further.

    Usage:
        cache = ClientCache(MemoryTier(), PersistentTier(value_adapter=adapter))

        entry = await cache.get_from_memory(keyset)
        if entry is None:
            entry = await cache.get_from_persistent(keyset)
        ...
        await cache.set(keyset, batch)
    """

    def __init__(
        self, memory: CacheTier[T], persistent: CacheTier[T], clock: Clock = utc_now
    ):
        self.memory = memory
        self.persistent = persistent
        self._clock = clock

    async def get_from_memory(self, keyset: Keyset) -> CacheEntry[T] | None:
        return await self.memory.get(keyset)

    async def get_from_persistent(self, keyset: Keyset) -> CacheEntry[T] | None:
        return await self.persistent.get(keyset)

    async def set(self, keyset: Keyset, value: T) -> None:
        """Write to both tiers, each with its own TTL."""
        await self.memory.set(keyset, value)
        await self.persistent.set(keyset, value)

    async def promote(self, keyset: Keyset, entry: CacheEntry[T]) -> None:
        """Copy a persistent hit into memory, expiring no later than the original."""
        remaining = entry.ttl - entry.age(self._clock())
        if remaining <= timedelta(0):
            return
        await self.memory.set(keyset, entry.value, min(self.memory.default_ttl, remaining))

    async def invalidate(self, account_ids: list[str]) -> int:
        removed = await self.memory.invalidate(account_ids)
        removed += await self.persistent.invalidate(account_ids)
        return removed

    async def clear(self) -> None:
        await self.memory.clear()
        await self.persistent.clear()
