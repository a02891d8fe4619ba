"""
Repository layer - data access for the cache tables.
"""

from datetime import datetime

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.datastore.models import EnrichmentCacheDB, SyncWatermarkDB
from marketsync.enrichment.types import EnrichmentKey


class EnrichmentCacheRepository:
    """Rows of the enrichment cache table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: EnrichmentKey) -> EnrichmentCacheDB | None:
        result = await self.session.execute(
            select(EnrichmentCacheDB).where(
                EnrichmentCacheDB.account_id == key.account_id,
                EnrichmentCacheDB.resource_type == key.resource_type.value,
                EnrichmentCacheDB.resource_id == key.resource_id,
            )
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        key: EnrichmentKey,
        payload: str,
        stored_at: datetime,
        ttl_seconds: float,
        partial: bool,
        record_count: int,
    ) -> EnrichmentCacheDB:
        """Overwrite the row of ``key`` wholesale (last write wins)."""
        cached = await self.get(key)

        if cached:
            cached.payload = payload
            cached.stored_at = stored_at
            cached.ttl_seconds = ttl_seconds
            cached.partial = partial
            cached.record_count = record_count
            cached.is_listing = key.is_listing
            logger.debug(f"Updated server cache for {key}")
        else:
            cached = EnrichmentCacheDB(
                account_id=key.account_id,
                resource_type=key.resource_type.value,
                resource_id=key.resource_id,
                payload=payload,
                is_listing=key.is_listing,
                record_count=record_count,
                partial=partial,
                stored_at=stored_at,
                ttl_seconds=ttl_seconds,
            )
            self.session.add(cached)
            logger.debug(f"Created server cache for {key}")
        await self.session.flush()
        return cached

    async def delete(self, key: EnrichmentKey) -> None:
        await self.session.execute(
            delete(EnrichmentCacheDB).where(
                EnrichmentCacheDB.account_id == key.account_id,
                EnrichmentCacheDB.resource_type == key.resource_type.value,
                EnrichmentCacheDB.resource_id == key.resource_id,
            )
        )

    async def list_stored_before(
        self, account_id: str, cutoff: datetime
    ) -> list[EnrichmentCacheDB]:
        """Rows of an account written at or before ``cutoff``, oldest first."""
        result = await self.session.execute(
            select(EnrichmentCacheDB)
            .where(
                EnrichmentCacheDB.account_id == account_id,
                EnrichmentCacheDB.stored_at <= cutoff,
            )
            .order_by(EnrichmentCacheDB.stored_at)
        )
        return list(result.scalars().all())

    async def delete_account(self, account_id: str) -> int:
        result = await self.session.execute(
            delete(EnrichmentCacheDB).where(EnrichmentCacheDB.account_id == account_id)
        )
        deleted = result.rowcount or 0
        if deleted > 0:
            logger.debug(f"Invalidated {deleted} server cache rows of {account_id}")
        return deleted

    async def count(self, account_id: str | None = None) -> int:
        stmt = select(EnrichmentCacheDB.id)
        if account_id is not None:
            stmt = stmt.where(EnrichmentCacheDB.account_id == account_id)
        result = await self.session.execute(stmt)
        return len(result.scalars().all())


class SyncWatermarkRepository:
    """Rows of the sync watermark table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, account_id: str, resource_type: str) -> SyncWatermarkDB | None:
        result = await self.session.execute(
            select(SyncWatermarkDB).where(
                SyncWatermarkDB.account_id == account_id,
                SyncWatermarkDB.resource_type == resource_type,
            )
        )
        return result.scalar_one_or_none()

    async def advance(
        self,
        account_id: str,
        resource_type: str,
        record_count: int,
        synced_at: datetime,
    ) -> SyncWatermarkDB:
        """Record a pass; the stored count never goes down."""
        watermark = await self.get(account_id, resource_type)
        if watermark:
            watermark.last_synced_at = max(watermark.last_synced_at, synced_at)
            watermark.record_count = max(watermark.record_count, record_count)
        else:
            watermark = SyncWatermarkDB(
                account_id=account_id,
                resource_type=resource_type,
                last_synced_at=synced_at,
                record_count=record_count,
            )
            self.session.add(watermark)
        await self.session.flush()
        return watermark
