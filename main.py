"""
Marketsync entry point
Wires the marketplace client, the cache tiers, background sync and the HTTP API
"""

import asyncio

import uvicorn
from loguru import logger
from pydantic import TypeAdapter

from marketsync.api import create_app
from marketsync.datasource.marketplace import MarketplaceDataSource, MarketplaceLoader
from marketsync.datasource.tokens import FileTokenProvider
from marketsync.datastore.engine import close_db, init_db
from marketsync.datastore.store import SqlServerCacheStore
from marketsync.enrichment.merger import EnrichmentMerger
from marketsync.services.cache import ClientCache, MemoryTier, PersistentTier
from marketsync.services.client import close_marketplace_client, get_marketplace_client
from marketsync.settings import global_settings
from marketsync.sync.gateway import EnrichedBatch, Gateway
from marketsync.sync.resolver import CacheResolutionPolicy
from marketsync.sync.scheduler import SyncScheduler


async def main() -> None:
    """Main function"""
    logger.info("Starting Marketsync...")

    gateway = None
    scheduler = None
    try:
        logger.info("Initializing database...")
        await init_db()
        logger.info("Database initialized successfully")

        client = get_marketplace_client()
        token_provider = FileTokenProvider()
        loader = MarketplaceLoader(
            MarketplaceDataSource(client), EnrichmentMerger(client), token_provider
        )
        store = SqlServerCacheStore()
        policy = CacheResolutionPolicy(store, loader)
        client_cache = ClientCache(
            MemoryTier(),
            PersistentTier(value_adapter=TypeAdapter(EnrichedBatch)),
        )
        gateway = Gateway(policy, client_cache)

        scheduler = SyncScheduler(store, loader)
        for account_id in token_provider.account_ids():
            scheduler.register_account(account_id)
        logger.info(f"Registered {len(scheduler.accounts)} accounts for background sync")
        scheduler.start()

        app = create_app(gateway, scheduler, client)
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=global_settings.api_host,
                port=global_settings.api_port,
                log_level="info",
            )
        )
        logger.info(
            f"Marketsync API listening on {global_settings.api_host}:{global_settings.api_port}"
        )
        await server.serve()

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    except Exception as e:
        logger.error(f"Error in main loop: {e}")
    finally:
        if scheduler is not None and scheduler.is_running():
            logger.info("Stopping sync scheduler...")
            scheduler.stop()

        if gateway is not None:
            await gateway.close()

        await close_marketplace_client()

        logger.info("Closing database connections...")
        await close_db()

        logger.info("Marketsync stopped")


if __name__ == "__main__":
    asyncio.run(main())
