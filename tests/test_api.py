"""Tests for the HTTP API."""

from datetime import date
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from fakes import make_listing
from marketsync.api import create_app
from marketsync.enrichment.types import DateRange, EnrichmentKey, ResourceType
from marketsync.services.errors import RequestSupersededError
from marketsync.sync.gateway import AccountFailure, EnrichedBatch
from marketsync.sync.scheduler import AccountSyncStats


class FakeGateway:
    """Records gateway calls and answers with a preset batch or error."""

    def __init__(self, batch: EnrichedBatch | None = None, error: Exception | None = None):
        self.batch = batch or EnrichedBatch()
        self.error = error
        self.calls = []
        self.invalidated = []
        self.policy = SimpleNamespace(get_stats=lambda: {"fresh": 1})

    async def get_enriched(self, resource_type, account_ids, date_range, **kwargs):
        self.calls.append((resource_type, account_ids, date_range, kwargs))
        if self.error is not None:
            raise self.error
        return self.batch

    async def invalidate(self, account_ids, include_server=False):
        self.invalidated.append((account_ids, include_server))
        return 2


class FakeScheduler:
    async def sync_now(self):
        return {"acc-1": AccountSyncStats(refreshed=3, record_counts={"order": 3})}

    def is_running(self):
        return True


def unauthorized() -> AccountFailure:
    return AccountFailure(kind="unauthorized", message="revoked", reconnect_required=True)


def transient() -> AccountFailure:
    return AccountFailure(kind="transient", message="HTTP 503")


def batch_for(*account_ids: str) -> EnrichedBatch:
    records = []
    for account_id in account_ids:
        key = EnrichmentKey.listing(account_id, ResourceType.ORDER, DateRange())
        records.extend(make_listing(key, 2, prefix=f"{account_id}-"))
    return EnrichedBatch(records=records, source="cache")


def client_for(gateway, scheduler=None) -> TestClient:
    return TestClient(create_app(gateway, scheduler))


class TestListings:
    def test_orders(self):
        gateway = FakeGateway(batch_for("acc-1"))

        response = client_for(gateway).get(
            "/orders",
            params={"account_id": "acc-1", "date_from": "2024-04-01", "date_to": "2024-04-30"},
        )

        assert response.status_code == 200
        body = response.json()
        assert len(body["records"]) == 2
        assert body["source"] == "cache"
        assert body["partial"] is False
        resource_type, account_ids, date_range, options = gateway.calls[0]
        assert resource_type == ResourceType.ORDER
        assert account_ids == ["acc-1"]
        assert date_range == DateRange(date_from=date(2024, 4, 1), date_to=date(2024, 4, 30))
        assert options["force_refresh"] is False
        assert options["freshness_threshold"] is None

    def test_claims_with_options(self):
        gateway = FakeGateway()

        response = client_for(gateway).get(
            "/claims",
            params={
                "account_id": ["acc-1", "acc-2"],
                "force_refresh": "true",
                "freshness_minutes": "5",
                "channel": "claims-tab",
            },
        )

        assert response.status_code == 200
        resource_type, account_ids, _, options = gateway.calls[0]
        assert resource_type == ResourceType.CLAIM
        assert account_ids == ["acc-1", "acc-2"]
        assert options["force_refresh"] is True
        assert options["freshness_threshold"].total_seconds() == 300
        assert options["channel"] == "claims-tab"

    def test_account_is_required(self):
        assert client_for(FakeGateway()).get("/orders").status_code == 422

    def test_inverted_range_is_rejected(self):
        gateway = FakeGateway()

        response = client_for(gateway).get(
            "/orders",
            params={"account_id": "acc-1", "date_from": "2024-05-01", "date_to": "2024-04-01"},
        )

        assert response.status_code == 422
        assert gateway.calls == []

    def test_superseded_request(self):
        gateway = FakeGateway(error=RequestSupersededError("orders"))

        response = client_for(gateway).get("/orders", params={"account_id": "acc-1"})

        assert response.status_code == 409


class TestAccountFailures:
    def test_some_accounts_failing_is_still_ok(self):
        batch = batch_for("acc-1")
        batch.errors = {"acc-2": unauthorized()}

        response = client_for(FakeGateway(batch)).get(
            "/orders", params={"account_id": ["acc-1", "acc-2"]}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["partial"] is True
        assert body["reconnect_required"] == ["acc-2"]
        assert body["errors"]["acc-2"]["kind"] == "unauthorized"

    def test_every_account_needs_reconnect(self):
        batch = EnrichedBatch(errors={"acc-1": unauthorized(), "acc-2": unauthorized()})

        response = client_for(FakeGateway(batch)).get(
            "/orders", params={"account_id": ["acc-1", "acc-2"]}
        )

        assert response.status_code == 401
        assert response.json()["detail"]["accounts"] == ["acc-1", "acc-2"]

    @pytest.mark.parametrize("first", [transient(), unauthorized()])
    def test_every_account_failed(self, first):
        batch = EnrichedBatch(errors={"acc-1": first, "acc-2": transient()})

        response = client_for(FakeGateway(batch)).get(
            "/claims", params={"account_id": ["acc-1", "acc-2"]}
        )

        assert response.status_code == 502
        assert set(response.json()["detail"]["errors"]) == {"acc-1", "acc-2"}


class TestMaintenance:
    def test_invalidate(self):
        gateway = FakeGateway()

        response = client_for(gateway).post(
            "/invalidate", json={"account_ids": ["acc-1"], "include_server": True}
        )

        assert response.json() == {"removed": 2}
        assert gateway.invalidated == [(["acc-1"], True)]

    def test_sync_requires_scheduler(self):
        assert client_for(FakeGateway()).post("/sync").status_code == 422

    def test_sync_and_health(self):
        client = client_for(FakeGateway(), FakeScheduler())

        sync = client.post("/sync").json()
        health = client.get("/health").json()

        assert sync["acc-1"]["refreshed"] == 3
        assert health["status"] == "ok"
        assert health["cache"] == {"fresh": 1}
        assert health["sync_running"] is True
