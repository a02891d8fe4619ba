"""
Marketplace data source - base resources and account listings.

The searches page through ``/orders/search`` and ``/post-purchase/v1/claims/search``
with offset/limit until the reported total (or the page cap) is reached.
MarketplaceLoader turns an EnrichmentKey into freshly enriched data and is the
loader the cache resolution policy and the background sync call on a miss.
"""

from datetime import datetime, time
from typing import Any, Union

from loguru import logger

from marketsync.enrichment.merger import EnrichmentMerger
from marketsync.enrichment.relations import CORE_ENDPOINTS
from marketsync.enrichment.types import (
    AccountCredentials,
    DateRange,
    EnrichedRecord,
    EnrichmentKey,
    ResourceType,
    TokenProvider,
)
from marketsync.services.client import MarketplaceClient, get_marketplace_client
from marketsync.services.errors import MarketplaceError
from marketsync.settings import global_settings

LoadedValue = Union[EnrichedRecord, list[EnrichedRecord]]


def _day_start(value) -> str:
    return datetime.combine(value, time.min).isoformat() + ".000Z"


def _day_end(value) -> str:
    return datetime.combine(value, time(23, 59, 59)).isoformat() + ".999Z"


class MarketplaceDataSource:
    """
    Paginated searches and base resource fetches for one marketplace.

    A search failure propagates: a listing is either complete or not cached.
    """

    SERVICE_ID = "marketplace"

    def __init__(
        self,
        client: MarketplaceClient | None = None,
        page_size: int | None = None,
        max_pages: int | None = None,
    ):
        self.client = client or get_marketplace_client()
        self.page_size = page_size or global_settings.search_page_size
        self.max_pages = max_pages or global_settings.search_max_pages

    @property
    def service_id(self) -> str:
        return self.SERVICE_ID

    async def search_orders(
        self, credentials: AccountCredentials, date_range: DateRange
    ) -> list[dict[str, Any]]:
        """All orders of the seller created inside ``date_range``."""
        params: dict[str, Any] = {"seller": credentials.seller_id or credentials.account_id}
        if date_range.date_from:
            params["order.date_created.from"] = _day_start(date_range.date_from)
        if date_range.date_to:
            params["order.date_created.to"] = _day_end(date_range.date_to)

        orders = await self._paginate("orders_search", params, credentials, "results")
        logger.info(
            f"Fetched {len(orders)} orders for {credentials.account_id} ({date_range.label})"
        )
        return orders

    async def search_claims(
        self, credentials: AccountCredentials, date_range: DateRange
    ) -> list[dict[str, Any]]:
        """All claims of the seller opened inside ``date_range``."""
        params: dict[str, Any] = {
            "seller_id": credentials.seller_id or credentials.account_id
        }
        if date_range.date_from:
            params["date_from"] = date_range.date_from.isoformat()
        if date_range.date_to:
            params["date_to"] = date_range.date_to.isoformat()

        claims = await self._paginate("claims_search", params, credentials, "data")
        # The claims search filter is coarser than a day; trim to the exact range
        claims = [claim for claim in claims if date_range.contains(claim.get("date_created"))]
        logger.info(
            f"Fetched {len(claims)} claims for {credentials.account_id} ({date_range.label})"
        )
        return claims

    async def _paginate(
        self,
        resource: str,
        params: dict[str, Any],
        credentials: AccountCredentials,
        results_field: str,
    ) -> list[dict[str, Any]]:
        collected: list[dict[str, Any]] = []
        offset = 0

        for _ in range(self.max_pages):
            page = await self.client.fetch_resource(
                resource,
                None,
                credentials.access_token,
                account_id=credentials.account_id,
                params={**params, "offset": offset, "limit": self.page_size},
            )
            if not isinstance(page, dict):
                page = {}
            results = page.get(results_field) or []
            collected.extend(item for item in results if isinstance(item, dict))

            total = (page.get("paging") or {}).get("total", 0)
            offset += self.page_size
            if not results or offset >= total:
                break
        else:
            logger.warning(
                f"{resource} for {credentials.account_id} stopped at the "
                f"{self.max_pages}-page cap ({len(collected)} records)"
            )

        return collected

    async def fetch_core(
        self,
        resource_type: ResourceType,
        resource_id: str,
        credentials: AccountCredentials,
    ) -> dict[str, Any]:
        """Base payload of one resource; every marketplace error propagates."""
        payload = await self.client.fetch_resource(
            CORE_ENDPOINTS[resource_type],
            resource_id,
            credentials.access_token,
            account_id=credentials.account_id,
        )
        if not isinstance(payload, dict) or not payload:
            raise MarketplaceError(
                f"Unexpected {resource_type.value} payload for {resource_id}",
                service_id=self.SERVICE_ID,
                account_id=credentials.account_id,
            )
        return payload


class MarketplaceLoader:
    """
    Loads the live value of an EnrichmentKey.

    Usage:
        loader = MarketplaceLoader(source, merger, token_provider)
        record = await loader.load(EnrichmentKey(account_id="a1", resource_type="order", resource_id="42"))
        listing = await loader.load(EnrichmentKey.listing("a1", ResourceType.CLAIM, DateRange()))
    """

    def __init__(
        self,
        source: MarketplaceDataSource,
        merger: EnrichmentMerger,
        token_provider: TokenProvider,
    ):
        self.source = source
        self.merger = merger
        self.token_provider = token_provider

    async def __call__(self, key: EnrichmentKey) -> LoadedValue:
        return await self.load(key)

    async def load(self, key: EnrichmentKey) -> LoadedValue:
        credentials = await self.token_provider(key.account_id)
        if key.is_listing:
            return await self.load_listing(key, credentials)

        core = await self.source.fetch_core(key.resource_type, key.resource_id, credentials)
        return await self.merger.enrich(key, core, credentials.access_token)

    async def load_listing(
        self, key: EnrichmentKey, credentials: AccountCredentials
    ) -> list[EnrichedRecord]:
        date_range = key.date_range
        if key.resource_type == ResourceType.ORDER:
            cores = await self.source.search_orders(credentials, date_range)
        elif key.resource_type == ResourceType.CLAIM:
            cores = await self.source.search_claims(credentials, date_range)
        else:
            raise ValueError(f"No listing search for {key.resource_type.value}")

        items = [
            (
                EnrichmentKey(
                    account_id=key.account_id,
                    resource_type=key.resource_type,
                    resource_id=str(core["id"]),
                ),
                core,
            )
            for core in cores
            if core.get("id") is not None
        ]
        records = await self.merger.enrich_many(items, credentials.access_token)

        partial = sum(1 for record in records if record.partial)
        logger.info(
            f"Enriched {len(records)} {key.resource_type.value}s for {key.account_id}"
            + (f" ({partial} partial)" if partial else "")
        )
        return records
