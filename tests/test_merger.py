"""Tests for EnrichmentMerger relation fan-out and partial handling."""

import pytest

from fakes import order_key
from marketsync.enrichment.merger import EnrichmentMerger
from marketsync.enrichment.relations import RelationSpec, by_id
from marketsync.enrichment.types import EnrichmentKey, ResourceType
from marketsync.services.errors import UnauthorizedError

ORDER_CORE = {
    "id": 1001,
    "status": "paid",
    "date_created": "2024-04-30T10:00:00.000-03:00",
    "shipping": {"id": 77},
    "order_items": [{"item": {"id": "MLB1"}, "quantity": 1}],
}

CLAIM_CORE = {
    "id": "C1",
    "type": "mediations",
    "resource": "order",
    "resource_id": "1001",
}


def claim_key(claim_id: str = "C1") -> EnrichmentKey:
    return EnrichmentKey(account_id="acc-1", resource_type=ResourceType.CLAIM, resource_id=claim_id)


def stub_full_order(stub, item_status: int = 200):
    stub.add("/shipments/77", json={"id": 77, "status": "shipped"})
    stub.add("/shipments/77/costs", json={"senders": [{"cost": 12.5}]})
    stub.add("/shipments/77/sla", json={"status": "on_time"})
    stub.add("/shipments/77/history", json=[{"status": "handling"}, {"status": "shipped"}])
    stub.add("/items/MLB1", json={"id": "MLB1", "title": "Lamp"}, status=item_status)
    stub.add("/post-purchase/v1/claims/search", json={"data": [{"id": "C1"}], "paging": {"total": 1}})


@pytest.fixture
def merger(client, clock):
    return EnrichmentMerger(client, concurrency=4, clock=clock)


class TestOrderEnrichment:
    @pytest.mark.asyncio
    async def test_full_plan(self, merger, stub, clock):
        stub_full_order(stub)

        record = await merger.enrich(order_key(), ORDER_CORE, "tok")

        assert record.core == ORDER_CORE
        assert record.partial is False
        assert record.failed_relations == []
        assert record.fetched_at == clock()
        assert record.related["shipping"]["status"] == "shipped"
        assert record.related["costs"] == {"senders": [{"cost": 12.5}]}
        assert record.related["sla"] == {"status": "on_time"}
        assert len(record.related["statusHistory"]) == 2
        assert record.related["item"]["title"] == "Lamp"
        assert record.related["claims"] == [{"id": "C1"}]
        assert record.insights is None

    @pytest.mark.asyncio
    async def test_claims_search_is_scoped_to_the_order(self, merger, stub):
        stub_full_order(stub)

        await merger.enrich(order_key(), ORDER_CORE, "tok")

        search = next(r for r in stub.requests if r.url.path.endswith("/claims/search"))
        assert search.url.params["resource"] == "order"
        assert search.url.params["resource_id"] == "1001"

    @pytest.mark.asyncio
    async def test_missing_shipment_skips_children_and_stays_complete(self, merger, stub):
        stub.add("/items/MLB1", json={"id": "MLB1"})
        stub.add("/post-purchase/v1/claims/search", json={"data": []})

        record = await merger.enrich(order_key(), ORDER_CORE, "tok")

        assert record.partial is False
        for name in ("shipping", "costs", "sla", "statusHistory"):
            assert record.is_absent(name)
        assert stub.calls("/shipments/77/costs") == 0

    @pytest.mark.asyncio
    async def test_inapplicable_relation_makes_no_call(self, merger, stub):
        core = {"id": 1002, "order_items": []}
        stub.add("/post-purchase/v1/claims/search", json={"data": []})

        record = await merger.enrich(order_key(order_id="1002"), core, "tok")

        assert record.is_absent("shipping")
        assert record.is_absent("item")
        assert record.related["claims"] == []
        assert [r.url.path for r in stub.requests] == ["/post-purchase/v1/claims/search"]

    @pytest.mark.asyncio
    async def test_enrichment_is_idempotent(self, merger, stub, clock):
        stub_full_order(stub)

        first = await merger.enrich(order_key(), ORDER_CORE, "tok")
        clock.advance(minutes=5)
        second = await merger.enrich(order_key(), ORDER_CORE, "tok")

        assert first.same_content(second)
        assert second.fetched_at > first.fetched_at

    @pytest.mark.asyncio
    async def test_empty_core_is_rejected(self, merger):
        with pytest.raises(ValueError):
            await merger.enrich(order_key(), {}, "tok")

    @pytest.mark.asyncio
    async def test_custom_plan(self, merger, stub):
        stub.add("/items/MLB1", json={"id": "MLB1"})

        record = await merger.enrich(
            order_key(),
            ORDER_CORE,
            "tok",
            relations=[RelationSpec("item", "item", by_id("order_items", 0, "item", "id"))],
        )

        assert list(record.related) == ["item"]


class TestClaimEnrichment:
    @pytest.mark.asyncio
    async def test_partial_when_a_relation_keeps_failing(self, merger, stub):
        stub.add("/orders/1001", json={"id": 1001, "shipping": {"id": 77}})
        stub.add("/shipments/77", json={"id": 77})
        stub.add("/post-purchase/v1/claims/C1/messages", status=503)

        record = await merger.enrich(claim_key(), CLAIM_CORE, "tok")

        assert record.core == CLAIM_CORE
        assert record.partial is True
        assert record.failed_relations == ["messages"]
        assert record.is_absent("returns")
        assert record.is_absent("messages")
        assert record.related["order"]["id"] == 1001
        assert record.related["shipping"] == {"id": 77}
        assert stub.calls("/post-purchase/v1/claims/C1/messages") == 2
        assert stub.calls("/marketplace/v2/claims/C1/messages") == 0

    @pytest.mark.asyncio
    async def test_claim_without_order_resource(self, merger, stub):
        core = {"id": "C2", "resource": "shipment", "resource_id": "77"}

        record = await merger.enrich(claim_key("C2"), core, "tok")

        assert record.is_absent("order")
        assert stub.calls("/orders/77") == 0

    @pytest.mark.asyncio
    async def test_insights_are_derived(self, merger, stub):
        stub.add(
            "/post-purchase/v1/claims/C1/messages",
            json=[
                {"sender_role": "complainant", "date_created": "2024-04-30T10:00:00Z", "date_read": "x"},
                {"sender_role": "respondent", "date_created": "2024-04-30T11:00:00Z"},
                {"from": {"role": "complainant"}, "date_created": "2024-04-30T12:00:00Z"},
            ],
        )
        stub.add("/post-purchase/v1/claims/C1/attachments", json=[{"id": 1}])

        record = await merger.enrich(claim_key(), {"id": "C1", "resource": "shipment"}, "tok")

        assert record.insights["message_count"] == 3
        assert record.insights["unread_messages"] == 2
        assert record.insights["last_message_sender"] == "complainant"
        assert record.insights["attachments_count"] == 1
        assert record.insights["priority"] == "medium"
        assert record.insights["average_response_minutes"] == 60


class TestUnauthorized:
    @pytest.mark.asyncio
    async def test_rejected_token_aborts_the_record(self, merger, stub):
        stub_full_order(stub, item_status=401)

        with pytest.raises(UnauthorizedError):
            await merger.enrich(order_key(), ORDER_CORE, "tok")

    @pytest.mark.asyncio
    async def test_enrich_many_keeps_input_order(self, merger, stub):
        stub.add("/post-purchase/v1/claims/search", json={"data": []})
        items = [(order_key(order_id="1"), {"id": 1}), (order_key(order_id="2"), {"id": 2})]

        records = await merger.enrich_many(items, "tok")

        assert [record.key.resource_id for record in records] == ["1", "2"]

    @pytest.mark.asyncio
    async def test_enrich_many_propagates_unauthorized(self, merger, stub):
        stub.add("/post-purchase/v1/claims/search", status=401)
        items = [(order_key(order_id="1"), {"id": 1}), (order_key(order_id="2"), {"id": 2})]

        with pytest.raises(UnauthorizedError):
            await merger.enrich_many(items, "tok")
