"""Tests for CacheResolutionPolicy: fresh, stale-while-revalidate and miss paths."""

import asyncio
from datetime import timedelta

import pytest

from fakes import make_record, order_key
from marketsync.sync.resolver import CacheResolutionPolicy, CacheState
from marketsync.services.errors import TransientError, UnauthorizedError


class RecordingLoader:
    """Loader returning a new record version per call, optionally held on an event."""

    def __init__(self, clock, gate: asyncio.Event | None = None, errors: dict | None = None):
        self.clock = clock
        self.gate = gate
        self.errors = errors or {}
        self.calls = []

    async def __call__(self, key):
        self.calls.append(key)
        if self.gate is not None:
            await self.gate.wait()
        if key in self.errors:
            raise self.errors[key]
        return make_record(key, core={"id": key.resource_id, "version": len(self.calls)})


@pytest.fixture
def loader(clock):
    return RecordingLoader(clock)


@pytest.fixture
def policy(memory_store, loader, clock):
    return CacheResolutionPolicy(
        memory_store, loader, freshness_threshold=timedelta(minutes=10), clock=clock
    )


class TestResolve:
    @pytest.mark.asyncio
    async def test_fresh_entry_served_without_load(self, policy, memory_store, loader):
        key = order_key()
        memory_store.seed(key, make_record(key), age=timedelta(minutes=5))

        resolution = await policy.resolve(key)

        assert resolution.state == CacheState.FRESH
        assert resolution.source == "cache"
        assert loader.calls == []

    @pytest.mark.asyncio
    async def test_miss_loads_and_stores(self, policy, memory_store, loader, clock):
        key = order_key()

        resolution = await policy.resolve(key)

        assert resolution.state == CacheState.MISS
        assert resolution.source == "live"
        assert resolution.stored_at == clock.now
        assert memory_store.entries[key].value == resolution.value
        assert loader.calls == [key]

    @pytest.mark.asyncio
    async def test_stale_returns_before_the_refresh_completes(self, memory_store, clock):
        gate = asyncio.Event()
        loader = RecordingLoader(clock, gate=gate)
        policy = CacheResolutionPolicy(
            memory_store, loader, freshness_threshold=timedelta(minutes=10), clock=clock
        )
        key = order_key()
        stale = make_record(key, core={"id": key.resource_id, "version": 0})
        memory_store.seed(key, stale, age=timedelta(minutes=30))

        resolution = await policy.resolve(key)

        assert resolution.state == CacheState.STALE
        assert resolution.value == stale
        assert policy.is_refreshing(key)

        gate.set()
        await policy.wait_for_refreshes()

        assert memory_store.entries[key].value.core["version"] == 1
        assert memory_store.entries[key].stored_at == clock.now
        assert not policy.is_refreshing(key)

    @pytest.mark.asyncio
    async def test_one_refresh_per_key(self, memory_store, clock):
        gate = asyncio.Event()
        loader = RecordingLoader(clock, gate=gate)
        policy = CacheResolutionPolicy(
            memory_store, loader, freshness_threshold=timedelta(minutes=10), clock=clock
        )
        key = order_key()
        memory_store.seed(key, make_record(key), age=timedelta(minutes=30))

        await policy.resolve(key)
        await policy.resolve(key)
        await asyncio.sleep(0)
        gate.set()
        await policy.wait_for_refreshes()

        assert len(loader.calls) == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_the_stale_entry(self, memory_store, clock):
        key = order_key()
        loader = RecordingLoader(clock, errors={key: TransientError("down", service_id="m")})
        policy = CacheResolutionPolicy(
            memory_store, loader, freshness_threshold=timedelta(minutes=10), clock=clock
        )
        stale = make_record(key)
        memory_store.seed(key, stale, age=timedelta(minutes=30))

        await policy.resolve(key)
        await policy.wait_for_refreshes()

        assert memory_store.entries[key].value == stale
        assert policy.get_stats()["refreshes_failed"] == 1

    @pytest.mark.asyncio
    async def test_zero_threshold_forces_a_live_load(self, policy, memory_store, loader):
        key = order_key()
        memory_store.seed(key, make_record(key), age=timedelta(seconds=1))

        resolution = await policy.resolve(key, freshness_threshold=timedelta(0))

        assert resolution.state == CacheState.MISS
        assert loader.calls == [key]

    @pytest.mark.asyncio
    async def test_tighter_caller_threshold_loads_live(self, policy, memory_store, loader):
        key = order_key()
        old = make_record(key, core={"id": key.resource_id, "version": 0})
        memory_store.seed(key, old, age=timedelta(minutes=5))

        resolution = await policy.resolve(key, freshness_threshold=timedelta(minutes=1))

        assert resolution.state == CacheState.MISS
        assert resolution.source == "live"
        assert resolution.value.core["version"] == 1
        assert memory_store.entries[key].value.core["version"] == 1
        assert not policy.is_refreshing(key)

    @pytest.mark.asyncio
    async def test_caller_threshold_still_serves_fresh_entries(self, policy, memory_store, loader):
        key = order_key()
        memory_store.seed(key, make_record(key), age=timedelta(minutes=5))

        resolution = await policy.resolve(key, freshness_threshold=timedelta(minutes=30))

        assert resolution.state == CacheState.FRESH
        assert loader.calls == []

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_load(self, memory_store, clock):
        gate = asyncio.Event()
        loader = RecordingLoader(clock, gate=gate)
        policy = CacheResolutionPolicy(memory_store, loader, clock=clock)
        key = order_key()

        waiters = [asyncio.create_task(policy.resolve(key)) for _ in range(3)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*waiters)

        assert len(loader.calls) == 1
        assert memory_store.puts == 1
        assert all(result.value == results[0].value for result in results)

    @pytest.mark.asyncio
    async def test_unavailable_store_degrades_to_live(self, policy, memory_store, loader):
        memory_store.unavailable = True
        key = order_key()

        resolution = await policy.resolve(key)

        assert resolution.source == "live"
        assert loader.calls == [key]
        assert policy.get_stats()["store_unavailable"] == 2

    @pytest.mark.asyncio
    async def test_miss_failure_propagates(self, memory_store, clock):
        key = order_key()
        loader = RecordingLoader(clock, errors={key: TransientError("down", service_id="m")})
        policy = CacheResolutionPolicy(memory_store, loader, clock=clock)

        with pytest.raises(TransientError):
            await policy.resolve(key)
        assert key not in memory_store.entries


class TestResolveMany:
    @pytest.mark.asyncio
    async def test_errors_are_isolated_per_key(self, memory_store, clock):
        good, bad = order_key("acc-1"), order_key("acc-2")
        loader = RecordingLoader(
            clock, errors={bad: UnauthorizedError("token", service_id="m", status_code=401)}
        )
        policy = CacheResolutionPolicy(memory_store, loader, clock=clock)

        results = await policy.resolve_many([good, bad])

        assert results[good].value.key == good
        assert isinstance(results[bad], UnauthorizedError)

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self, memory_store, clock):
        key = order_key()
        loader = RecordingLoader(clock, errors={key: KeyError("bug")})
        policy = CacheResolutionPolicy(memory_store, loader, clock=clock)

        with pytest.raises(KeyError):
            await policy.resolve_many([key])
