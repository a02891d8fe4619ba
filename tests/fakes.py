"""
Test doubles shared by the test modules.

- FakeClock: controllable naive-UTC clock injected wherever time matters
- MarketplaceStub: httpx.MockTransport routing paths to canned responses
- InMemoryServerCacheStore: ServerCacheStore fake for policy/gateway tests
"""

from datetime import datetime, timedelta
from typing import Any, Callable

import httpx

from marketsync.datastore.store import StoredValue, SyncWatermark
from marketsync.enrichment.types import EnrichedRecord, EnrichmentKey, ResourceType
from marketsync.services.cache import CacheEntry
from marketsync.services.errors import CacheUnavailableError

BASE_URL = "https://api.marketplace.test"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


async def no_sleep(_seconds: float) -> None:
    return None


Responder = Callable[[httpx.Request], httpx.Response]


class MarketplaceStub:
    """
    Fake marketplace.

    Unknown paths answer 404. A route registered with several responses
    serves them in order and then keeps repeating the last one.
    """

    def __init__(self):
        self._routes: dict[str, list[httpx.Response | Responder]] = {}
        self.requests: list[httpx.Request] = []

    def add(
        self,
        path: str,
        json: Any = None,
        status: int = 200,
        headers: dict[str, str] | None = None,
    ) -> "MarketplaceStub":
        response = httpx.Response(status, json=json if json is not None else {}, headers=headers)
        self._routes.setdefault(path, []).append(response)
        return self

    def add_handler(self, path: str, responder: Responder) -> "MarketplaceStub":
        self._routes.setdefault(path, []).append(responder)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, json={"message": "not_found"})
        route = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(route) and not isinstance(route, httpx.Response):
            return route(request)
        return route

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, path: str) -> int:
        return sum(1 for request in self.requests if request.url.path == path)


class InMemoryServerCacheStore:
    """Dict-backed ServerCacheStore."""

    def __init__(self, clock: FakeClock, ttl: timedelta = timedelta(hours=24)):
        self.clock = clock
        self.ttl = ttl
        self.entries: dict[EnrichmentKey, CacheEntry[StoredValue]] = {}
        self.watermarks: dict[tuple[str, ResourceType], SyncWatermark] = {}
        self.unavailable = False
        self.puts = 0

    def _check(self) -> None:
        if self.unavailable:
            raise CacheUnavailableError("store offline", service_id="server_cache")

    def seed(self, key: EnrichmentKey, value: StoredValue, age: timedelta = timedelta(0)) -> None:
        self.entries[key] = CacheEntry(
            key=key, value=value, stored_at=self.clock() - age, ttl=self.ttl
        )

    async def get(self, key: EnrichmentKey) -> CacheEntry[StoredValue] | None:
        self._check()
        entry = self.entries.get(key)
        if entry is not None and not entry.is_valid(self.clock()):
            del self.entries[key]
            return None
        return entry

    async def put(self, key: EnrichmentKey, value: StoredValue, ttl: timedelta | None = None) -> None:
        self._check()
        self.puts += 1
        self.entries[key] = CacheEntry(
            key=key, value=value, stored_at=self.clock(), ttl=ttl or self.ttl
        )

    async def list_stale(self, account_id: str, threshold: timedelta) -> list[EnrichmentKey]:
        self._check()
        now = self.clock()
        return [
            key
            for key, entry in self.entries.items()
            if key.account_id == account_id and now - entry.stored_at >= threshold
        ]

    async def invalidate(self, account_id: str) -> int:
        self._check()
        doomed = [key for key in self.entries if key.account_id == account_id]
        for key in doomed:
            del self.entries[key]
        return len(doomed)

    async def get_watermark(self, account_id: str, resource_type: ResourceType) -> SyncWatermark | None:
        self._check()
        return self.watermarks.get((account_id, resource_type))

    async def advance_watermark(
        self,
        account_id: str,
        resource_type: ResourceType,
        record_count: int,
        synced_at: datetime | None = None,
    ) -> SyncWatermark:
        self._check()
        previous = self.watermarks.get((account_id, resource_type))
        watermark = SyncWatermark(
            account_id=account_id,
            resource_type=resource_type,
            last_synced_at=synced_at or self.clock(),
            record_count=max(record_count, previous.record_count if previous else 0),
        )
        self.watermarks[(account_id, resource_type)] = watermark
        return watermark


def order_key(account_id: str = "acc-1", order_id: str = "1001") -> EnrichmentKey:
    return EnrichmentKey(
        account_id=account_id, resource_type=ResourceType.ORDER, resource_id=order_id
    )


def make_record(
    key: EnrichmentKey,
    core: dict[str, Any] | None = None,
    related: dict[str, Any] | None = None,
    fetched_at: datetime | None = None,
) -> EnrichedRecord:
    return EnrichedRecord(
        key=key,
        core=core or {"id": key.resource_id, "status": "paid"},
        related=related or {},
        fetched_at=fetched_at or datetime(2024, 5, 1, 12, 0, 0),
    )


def make_listing(key: EnrichmentKey, count: int, prefix: str = "") -> list[EnrichedRecord]:
    return [
        make_record(
            EnrichmentKey(
                account_id=key.account_id,
                resource_type=key.resource_type,
                resource_id=f"{prefix}{index}",
            ),
            core={
                "id": f"{prefix}{index}",
                "date_created": f"2024-04-{(index % 28) + 1:02d}T10:00:00.000-03:00",
            },
        )
        for index in range(count)
    ]

