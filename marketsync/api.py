"""FastAPI server exposing enriched orders and claims."""

from datetime import date, timedelta
from typing import Optional

from fastapi import FastAPI, Query
from loguru import logger
from pydantic import BaseModel

from marketsync.enrichment.types import DateRange, ResourceType
from marketsync.exceptions import (
    ConflictError,
    ReconnectRequiredError,
    UpstreamError,
    ValidationError,
)
from marketsync.services.client import MarketplaceClient
from marketsync.services.errors import RequestSupersededError
from marketsync.settings import global_settings
from marketsync.sync.gateway import EnrichedBatch, Gateway
from marketsync.sync.scheduler import SyncScheduler


class InvalidateRequest(BaseModel):
    account_ids: list[str]
    include_server: bool = False


class MarketsyncServer:
    """HTTP server in front of the gateway."""

    def __init__(
        self,
        gateway: Gateway,
        scheduler: SyncScheduler | None = None,
        client: MarketplaceClient | None = None,
    ):
        self.gateway = gateway
        self.scheduler = scheduler
        self.client = client
        self.app = FastAPI(title="Marketsync API", debug=global_settings.api_debug)

        # Register routes
        self.app.get("/orders")(self.get_orders)
        self.app.get("/claims")(self.get_claims)
        self.app.post("/invalidate")(self.invalidate)
        self.app.post("/sync")(self.sync_now)
        self.app.get("/health")(self.health_check)

    async def get_orders(
        self,
        account_id: list[str] = Query(...),
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        force_refresh: bool = False,
        freshness_minutes: Optional[float] = None,
        channel: Optional[str] = None,
    ):
        """Enriched orders of the given accounts."""
        return await self._get_batch(
            ResourceType.ORDER,
            account_id,
            date_from,
            date_to,
            force_refresh,
            freshness_minutes,
            channel,
        )

    async def get_claims(
        self,
        account_id: list[str] = Query(...),
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        force_refresh: bool = False,
        freshness_minutes: Optional[float] = None,
        channel: Optional[str] = None,
    ):
        """Enriched claims of the given accounts."""
        return await self._get_batch(
            ResourceType.CLAIM,
            account_id,
            date_from,
            date_to,
            force_refresh,
            freshness_minutes,
            channel,
        )

    async def _get_batch(
        self,
        resource_type: ResourceType,
        account_ids: list[str],
        date_from: date | None,
        date_to: date | None,
        force_refresh: bool,
        freshness_minutes: float | None,
        channel: str | None,
    ) -> dict:
        if date_from and date_to and date_from > date_to:
            raise ValidationError("date_from must not be after date_to")

        threshold = None if freshness_minutes is None else timedelta(minutes=freshness_minutes)
        try:
            batch = await self.gateway.get_enriched(
                resource_type,
                account_ids,
                DateRange(date_from=date_from, date_to=date_to),
                force_refresh=force_refresh,
                freshness_threshold=threshold,
                channel=channel,
            )
        except RequestSupersededError as e:
            raise ConflictError(str(e)) from e

        self._raise_if_all_failed(batch, account_ids)
        return {
            **batch.model_dump(mode="json"),
            "partial": batch.partial,
            "reconnect_required": batch.reconnect_required,
        }

    def _raise_if_all_failed(self, batch: EnrichedBatch, account_ids: list[str]) -> None:
        if not batch.errors or set(batch.errors) < set(account_ids):
            return

        if all(failure.reconnect_required for failure in batch.errors.values()):
            logger.warning(f"All accounts need reconnect: {sorted(batch.errors)}")
            raise ReconnectRequiredError(accounts=sorted(batch.errors))

        logger.error(f"Marketplace failed for every account: {sorted(batch.errors)}")
        raise UpstreamError(
            errors={
                account_id: failure.model_dump()
                for account_id, failure in batch.errors.items()
            }
        )

    async def invalidate(self, request: InvalidateRequest):
        """Drop cached data of the given accounts."""
        removed = await self.gateway.invalidate(
            request.account_ids, include_server=request.include_server
        )
        return {"removed": removed}

    async def sync_now(self):
        """Run a background sync pass right away."""
        if self.scheduler is None:
            raise ValidationError("Background sync is not configured")
        stats = await self.scheduler.sync_now()
        return {account_id: s.to_dict() for account_id, s in stats.items()}

    async def health_check(self):
        """Health check endpoint."""
        health = {
            "status": "ok",
            "service": "marketsync",
            "cache": self.gateway.policy.get_stats(),
        }
        if self.client is not None:
            health["marketplace"] = self.client.get_health_status()
        if self.scheduler is not None:
            health["sync_running"] = self.scheduler.is_running()
        return health


def create_app(
    gateway: Gateway,
    scheduler: SyncScheduler | None = None,
    client: MarketplaceClient | None = None,
) -> FastAPI:
    """Create the FastAPI app.

    Args:
        gateway: Gateway serving the requests
        scheduler: Background sync, enables ``POST /sync``
        client: Marketplace client reported by ``GET /health``

    Returns:
        FastAPI app
    """
    server = MarketsyncServer(gateway, scheduler, client)
    return server.app
