"""Tests for the background sync scheduler."""

from datetime import timedelta

import pytest

from fakes import make_listing, make_record, order_key
from marketsync.enrichment.types import DateRange, EnrichmentKey, ResourceType
from marketsync.services.errors import TransientError, UnauthorizedError
from marketsync.sync.scheduler import SYNC_JOB_ID, SyncScheduler


class SyncLoader:
    def __init__(self, listing_size: int = 4):
        self.listing_size = listing_size
        self.errors = {}
        self.calls = []

    async def __call__(self, key):
        self.calls.append(key)
        if key in self.errors:
            raise self.errors[key]
        if key.is_listing:
            return make_listing(key, self.listing_size)
        return make_record(key, core={"id": key.resource_id, "synced": True})


@pytest.fixture
def loader():
    return SyncLoader()


@pytest.fixture
def scheduler(memory_store, loader, clock):
    sync = SyncScheduler(
        memory_store, loader, stale_threshold=timedelta(minutes=15), clock=clock
    )
    sync.register_account("acc-1")
    return sync


def listing_key(resource_type: ResourceType, account_id: str = "acc-1") -> EnrichmentKey:
    return EnrichmentKey.listing(account_id, resource_type, DateRange())


class TestSyncAccount:
    @pytest.mark.asyncio
    async def test_creates_missing_listings_and_watermarks(self, scheduler, memory_store, clock):
        stats = await scheduler.sync_account("acc-1")

        assert stats.refreshed == 2
        assert stats.record_counts == {"order": 4, "claim": 4}
        assert listing_key(ResourceType.ORDER) in memory_store.entries
        watermark = await memory_store.get_watermark("acc-1", ResourceType.CLAIM)
        assert watermark.record_count == 4
        assert watermark.last_synced_at == clock.now

    @pytest.mark.asyncio
    async def test_refreshes_only_stale_entries(self, scheduler, memory_store, loader):
        stale, fresh = order_key(order_id="1"), order_key(order_id="2")
        memory_store.seed(stale, make_record(stale), age=timedelta(minutes=20))
        memory_store.seed(fresh, make_record(fresh), age=timedelta(minutes=5))
        for resource_type in (ResourceType.ORDER, ResourceType.CLAIM):
            key = listing_key(resource_type)
            memory_store.seed(key, make_listing(key, 3), age=timedelta(minutes=1))

        stats = await scheduler.sync_account("acc-1")

        assert loader.calls == [stale]
        assert stats.refreshed == 1
        assert memory_store.entries[stale].value.core["synced"] is True
        assert memory_store.entries[fresh].value.core.get("synced") is None
        assert stats.record_counts == {"order": 3, "claim": 3}

    @pytest.mark.asyncio
    async def test_watermark_count_never_decreases(self, scheduler, memory_store, loader, clock):
        await scheduler.sync_account("acc-1")

        loader.listing_size = 2
        clock.advance(minutes=20)
        stats = await scheduler.sync_account("acc-1")

        assert stats.refreshed == 2
        assert stats.record_counts["order"] == 4
        assert len(memory_store.entries[listing_key(ResourceType.ORDER)].value) == 2

    @pytest.mark.asyncio
    async def test_failed_refresh_is_counted_and_skipped(self, scheduler, memory_store, loader):
        loader.errors[listing_key(ResourceType.CLAIM)] = TransientError("down", service_id="m")

        stats = await scheduler.sync_account("acc-1")

        assert stats.failed == 1
        assert stats.record_counts == {"order": 4}
        assert await memory_store.get_watermark("acc-1", ResourceType.CLAIM) is None

    @pytest.mark.asyncio
    async def test_unauthorized_requests_reconnect(self, scheduler, memory_store, loader):
        loader.errors[listing_key(ResourceType.ORDER)] = UnauthorizedError(
            "revoked", service_id="m", status_code=401
        )

        stats = await scheduler.sync_account("acc-1")

        assert stats.reconnect_required is True
        assert stats.record_counts == {}
        assert memory_store.watermarks == {}


class TestSyncPass:
    @pytest.mark.asyncio
    async def test_sync_now_covers_registered_accounts(self, scheduler):
        scheduler.register_account("acc-2", DateRange.from_label("2024-04-01:2024-04-30"))

        results = await scheduler.sync_now()

        assert sorted(results) == ["acc-1", "acc-2"]
        assert scheduler.accounts == ["acc-1", "acc-2"]

        scheduler.unregister_account("acc-2")
        assert scheduler.accounts == ["acc-1"]

    @pytest.mark.asyncio
    async def test_sync_job_swallows_store_failures(self, scheduler, memory_store):
        memory_store.unavailable = True

        assert await scheduler.sync_job() is None

    @pytest.mark.asyncio
    async def test_start_registers_the_interval_job(self, scheduler):
        scheduler.start()
        try:
            assert scheduler.is_running()
            job = scheduler.scheduler.get_job(SYNC_JOB_ID)
            assert job is not None
            assert job.max_instances == 1
        finally:
            scheduler.stop()
        assert not scheduler.is_running()
