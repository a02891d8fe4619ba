"""
Gateway - the caller-facing entry point of the pipeline.

A request walks the client tiers (memory, then persistent), then the cache
resolution policy for each account's listing, which in turn reaches the
server cache store or the marketplace. Every request runs on a channel; a
newer request on the same channel cancels the one it supersedes.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Literal, TypeVar

from loguru import logger
from pydantic import BaseModel, Field

from marketsync.enrichment.types import (
    DateRange,
    EnrichedRecord,
    EnrichmentKey,
    Keyset,
    ResourceType,
)
from marketsync.services.cache import ClientCache
from marketsync.services.errors import (
    MarketplaceError,
    RateLimitedError,
    RequestSupersededError,
    UnauthorizedError,
)
from marketsync.sync.resolver import CacheResolutionPolicy, Resolution
from marketsync.utils import Clock, utc_now

T = TypeVar("T")

BatchSource = Literal["memory", "persistent", "cache", "live"]


class AccountFailure(BaseModel):
    """Why one account of a batch could not be resolved."""

    kind: str
    message: str
    reconnect_required: bool = False
    retry_after: float | None = None

    @classmethod
    def from_error(cls, error: MarketplaceError) -> "AccountFailure":
        return cls(
            kind=error.kind,
            message=str(error),
            reconnect_required=isinstance(error, UnauthorizedError),
            retry_after=error.retry_after if isinstance(error, RateLimitedError) else None,
        )


class EnrichedBatch(BaseModel):
    """Records of every requested account, newest first."""

    records: list[EnrichedRecord] = Field(default_factory=list)
    source: BatchSource = "live"
    as_of: datetime = Field(default_factory=utc_now)
    errors: dict[str, AccountFailure] = Field(default_factory=dict)

    @property
    def partial(self) -> bool:
        return bool(self.errors) or any(record.partial for record in self.records)

    @property
    def reconnect_required(self) -> list[str]:
        return sorted(
            account_id
            for account_id, failure in self.errors.items()
            if failure.reconnect_required
        )


class RequestRegistry:
    """
    One active request per channel.

    Starting a request on a busy channel cancels the previous one; its caller
    gets RequestSupersededError instead of a late, outdated result.
    """

    def __init__(self):
        self._active: dict[str, asyncio.Task] = {}

    def is_active(self, channel: str) -> bool:
        task = self._active.get(channel)
        return task is not None and not task.done()

    async def run(self, channel: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        previous = self._active.get(channel)
        if previous is not None and not previous.done():
            logger.debug(f"Superseding in-flight request on channel '{channel}'")
            previous.cancel()

        task = asyncio.ensure_future(request_fn())
        self._active[channel] = task
        try:
            return await task
        except asyncio.CancelledError:
            if task.cancelled() and self._active.get(channel) is not task:
                raise RequestSupersededError(channel) from None
            raise
        finally:
            if self._active.get(channel) is task:
                del self._active[channel]

    async def cancel_all(self) -> int:
        tasks = [task for task in self._active.values() if not task.done()]
        for task in tasks:
            task.cancel()
        self._active.clear()
        return len(tasks)


def _newest_first(record: EnrichedRecord) -> float:
    created = record.created_at
    return -(created.timestamp() if created else 0.0)


class Gateway:
    """
    Enriched orders and claims for a set of accounts and a date range.

    Usage:
        gateway = Gateway(policy, client_cache)
        batch = await gateway.get_enriched_orders(["acc-1", "acc-2"], DateRange(...))
        if batch.errors:
            ...
    """

    def __init__(
        self,
        policy: CacheResolutionPolicy,
        client_cache: ClientCache[EnrichedBatch] | None = None,
        registry: RequestRegistry | None = None,
        clock: Clock = utc_now,
    ):
        self.policy = policy
        self.client_cache = client_cache
        self.registry = registry or RequestRegistry()
        self._clock = clock

    async def get_enriched_orders(
        self,
        account_ids: list[str],
        date_range: DateRange | None = None,
        force_refresh: bool = False,
        freshness_threshold: timedelta | None = None,
        channel: str | None = None,
        use_client_cache: bool = True,
    ) -> EnrichedBatch:
        return await self.get_enriched(
            ResourceType.ORDER,
            account_ids,
            date_range,
            force_refresh=force_refresh,
            freshness_threshold=freshness_threshold,
            channel=channel,
            use_client_cache=use_client_cache,
        )

    async def get_enriched_claims(
        self,
        account_ids: list[str],
        date_range: DateRange | None = None,
        force_refresh: bool = False,
        freshness_threshold: timedelta | None = None,
        channel: str | None = None,
        use_client_cache: bool = True,
    ) -> EnrichedBatch:
        return await self.get_enriched(
            ResourceType.CLAIM,
            account_ids,
            date_range,
            force_refresh=force_refresh,
            freshness_threshold=freshness_threshold,
            channel=channel,
            use_client_cache=use_client_cache,
        )

    async def get_enriched(
        self,
        resource_type: ResourceType,
        account_ids: list[str],
        date_range: DateRange | None = None,
        force_refresh: bool = False,
        freshness_threshold: timedelta | None = None,
        channel: str | None = None,
        use_client_cache: bool = True,
    ) -> EnrichedBatch:
        """
        Resolve the listing of every account and merge them into one batch.

        Args:
            resource_type: ORDER or CLAIM
            account_ids: Accounts to include (order does not matter)
            date_range: Creation date range, unbounded by default
            force_refresh: Drop the client tiers and load live
            freshness_threshold: Maximum server cache age served without refresh
            channel: Supersession channel, defaults to the resource type's view
            use_client_cache: Consult and fill the client tiers

        Raises:
            RequestSupersededError: A newer request took over the channel
        """
        if not account_ids:
            raise ValueError("At least one account is required")

        keyset = Keyset.of(resource_type, account_ids, date_range)
        return await self.registry.run(
            channel or f"{resource_type.value}s",
            lambda: self._resolve(keyset, force_refresh, freshness_threshold, use_client_cache),
        )

    async def _resolve(
        self,
        keyset: Keyset,
        force_refresh: bool,
        freshness_threshold: timedelta | None,
        use_client_cache: bool,
    ) -> EnrichedBatch:
        tiers = self.client_cache if use_client_cache else None

        if force_refresh:
            if tiers is not None:
                await tiers.invalidate(list(keyset.account_ids))
            freshness_threshold = timedelta(0)
        elif tiers is not None:
            cached = await self._from_client_tiers(tiers, keyset)
            if cached is not None:
                return cached

        keys = [
            EnrichmentKey.listing(account_id, keyset.resource_type, keyset.date_range)
            for account_id in keyset.account_ids
        ]
        outcomes = await self.policy.resolve_many(keys, freshness_threshold)
        batch = self._merge(outcomes)

        if tiers is not None and not batch.errors:
            await tiers.set(keyset, batch)
        return batch

    async def _from_client_tiers(
        self, tiers: ClientCache[EnrichedBatch], keyset: Keyset
    ) -> EnrichedBatch | None:
        entry = await tiers.get_from_memory(keyset)
        if entry is not None:
            return entry.value.model_copy(update={"source": "memory"})

        entry = await tiers.get_from_persistent(keyset)
        if entry is not None:
            await tiers.promote(keyset, entry)
            return entry.value.model_copy(update={"source": "persistent"})
        return None

    def _merge(
        self, outcomes: dict[EnrichmentKey, Resolution | MarketplaceError]
    ) -> EnrichedBatch:
        records: list[EnrichedRecord] = []
        errors: dict[str, AccountFailure] = {}
        resolutions: list[Resolution] = []

        for key, outcome in outcomes.items():
            if isinstance(outcome, MarketplaceError):
                errors[key.account_id] = AccountFailure.from_error(outcome)
                logger.warning(f"Account {key.account_id} failed ({outcome.kind}): {outcome}")
                continue
            resolutions.append(outcome)
            records.extend(outcome.records)

        records.sort(key=_newest_first)
        source: BatchSource = (
            "cache"
            if resolutions and all(r.source == "cache" for r in resolutions)
            else "live"
        )
        as_of = min((r.stored_at for r in resolutions), default=self._clock())

        return EnrichedBatch(records=records, source=source, as_of=as_of, errors=errors)

    async def invalidate(self, account_ids: list[str], include_server: bool = False) -> int:
        """Drop client tier entries of ``account_ids`` (and their server rows if asked)."""
        removed = 0
        if self.client_cache is not None:
            removed += await self.client_cache.invalidate(account_ids)
        if include_server:
            for account_id in account_ids:
                removed += await self.policy.store.invalidate(account_id)
        logger.info(f"Invalidated {removed} cache entries for {account_ids}")
        return removed

    async def close(self) -> None:
        await self.registry.cancel_all()
        await self.policy.close()
