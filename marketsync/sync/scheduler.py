"""
Background synchronization of the server cache store.
Uses APScheduler to refresh stale entries of every registered account.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Sequence

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from marketsync.datastore.store import ServerCacheStore
from marketsync.enrichment.types import DateRange, EnrichmentKey, ResourceType
from marketsync.services.errors import MarketplaceError, UnauthorizedError
from marketsync.settings import global_settings
from marketsync.sync.resolver import Loader
from marketsync.utils import Clock, log_job, utc_now

SYNC_JOB_ID = "marketsync_sync_job"

DEFAULT_RESOURCE_TYPES = (ResourceType.ORDER, ResourceType.CLAIM)


@dataclass
class AccountSyncStats:
    """Outcome of one pass for one account."""

    refreshed: int = 0
    failed: int = 0
    record_counts: dict[str, int] = field(default_factory=dict)
    reconnect_required: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "refreshed": self.refreshed,
            "failed": self.failed,
            "record_counts": dict(self.record_counts),
            "reconnect_required": self.reconnect_required,
        }


class SyncScheduler:
    """
    Periodic pass over the server cache store.

    For each registered account: reload every entry older than the stale
    threshold, make sure the account's listings exist, then advance the
    sync watermark with the listing sizes.
    """

    def __init__(
        self,
        store: ServerCacheStore,
        loader: Loader,
        resource_types: Sequence[ResourceType] = DEFAULT_RESOURCE_TYPES,
        stale_threshold: timedelta | None = None,
        clock: Clock = utc_now,
    ):
        self.scheduler = AsyncIOScheduler()
        self.store = store
        self.loader = loader
        self.resource_types = tuple(resource_types)
        if stale_threshold is None:
            stale_threshold = timedelta(minutes=global_settings.freshness_threshold_minutes)
        self.stale_threshold = stale_threshold
        self._clock = clock
        self._accounts: dict[str, DateRange] = {}
        self._is_running = False

    def register_account(self, account_id: str, date_range: DateRange | None = None) -> None:
        """Keep ``account_id``'s listings for ``date_range`` in sync."""
        self._accounts[account_id] = date_range or DateRange()

    def unregister_account(self, account_id: str) -> None:
        self._accounts.pop(account_id, None)

    @property
    def accounts(self) -> list[str]:
        return sorted(self._accounts)

    @log_job
    async def sync_job(self) -> None:
        """Scheduled synchronization pass."""
        stats = await self.sync_now()
        refreshed = sum(s.refreshed for s in stats.values())
        logger.info(f"Scheduled sync completed: {refreshed} entries refreshed")

        for account_id, account_stats in stats.items():
            if account_stats.reconnect_required:
                logger.warning(f"  - {account_id}: needs reconnect")
            elif account_stats.failed:
                logger.warning(f"  - {account_id}: {account_stats.failed} refreshes failed")

    async def sync_now(self) -> dict[str, AccountSyncStats]:
        """Run one pass immediately and return per-account stats."""
        results: dict[str, AccountSyncStats] = {}
        for account_id, date_range in list(self._accounts.items()):
            results[account_id] = await self.sync_account(account_id, date_range)
        return results

    async def sync_account(
        self, account_id: str, date_range: DateRange | None = None
    ) -> AccountSyncStats:
        """
        Refresh one account.

        Unauthorized stops the account's pass; other marketplace failures are
        logged and the key is skipped. CacheUnavailableError propagates.
        """
        stats = AccountSyncStats()
        date_range = date_range or self._accounts.get(account_id) or DateRange()
        listing_keys = {
            resource_type: EnrichmentKey.listing(account_id, resource_type, date_range)
            for resource_type in self.resource_types
        }
        listing_counts: dict[ResourceType, int] = {}

        try:
            stale_keys = await self.store.list_stale(account_id, self.stale_threshold)
            for key in stale_keys:
                count = await self._refresh(key, stats)
                if count is not None and key in listing_keys.values():
                    listing_counts[key.resource_type] = count

            for resource_type, key in listing_keys.items():
                if resource_type in listing_counts:
                    continue
                entry = await self.store.get(key)
                if entry is not None:
                    listing_counts[resource_type] = (
                        len(entry.value) if isinstance(entry.value, list) else 1
                    )
                    continue
                count = await self._refresh(key, stats)
                if count is not None:
                    listing_counts[resource_type] = count
        except UnauthorizedError as e:
            stats.reconnect_required = True
            logger.warning(f"Sync of {account_id} stopped, token rejected: {e}")
            return stats

        synced_at = self._clock()
        for resource_type, count in listing_counts.items():
            watermark = await self.store.advance_watermark(
                account_id, resource_type, count, synced_at
            )
            stats.record_counts[resource_type.value] = watermark.record_count
        return stats

    async def _refresh(self, key: EnrichmentKey, stats: AccountSyncStats) -> int | None:
        try:
            value = await self.loader(key)
        except UnauthorizedError:
            raise
        except MarketplaceError as e:
            stats.failed += 1
            logger.warning(f"Sync refresh of {key} failed ({e.kind}): {e}")
            return None

        await self.store.put(key, value)
        stats.refreshed += 1
        return len(value) if isinstance(value, list) else 1

    def start(self) -> None:
        """Start the scheduler."""
        if self._is_running:
            logger.warning("Sync scheduler is already running")
            return

        interval_minutes = global_settings.sync_interval_minutes

        self.scheduler.add_job(
            self.sync_job,
            trigger="interval",
            minutes=interval_minutes,
            id=SYNC_JOB_ID,
            name="Server Cache Sync",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.start()
        self._is_running = True

        logger.info(f"Sync scheduler started: syncing every {interval_minutes} minutes")

    def stop(self) -> None:
        """Stop the scheduler."""
        if not self._is_running:
            logger.warning("Sync scheduler is not running")
            return

        self.scheduler.shutdown(wait=False)
        self._is_running = False
        logger.info("Sync scheduler stopped")

    def is_running(self) -> bool:
        return self._is_running
