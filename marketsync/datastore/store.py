"""
Server cache store - the database-backed tier behind every client.

``SqlServerCacheStore`` keeps one row per EnrichmentKey (a single record or a
whole account listing) plus the sync watermarks. Writes overwrite the row
wholesale. Any database failure surfaces as CacheUnavailableError so callers
can fall back to live fetches.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Protocol, Union

from loguru import logger
from pydantic import BaseModel, TypeAdapter, ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketsync.datastore.engine import get_session_factory
from marketsync.datastore.models import EnrichmentCacheDB
from marketsync.datastore.repositories import (
    EnrichmentCacheRepository,
    SyncWatermarkRepository,
)
from marketsync.enrichment.types import EnrichedRecord, EnrichmentKey, ResourceType
from marketsync.services.cache import CacheEntry
from marketsync.services.errors import CacheUnavailableError
from marketsync.settings import global_settings
from marketsync.utils import Clock, utc_now

StoredValue = Union[EnrichedRecord, list[EnrichedRecord]]

_VALUE_ADAPTER = TypeAdapter(StoredValue)

STORE_SERVICE_ID = "server_cache"


class SyncWatermark(BaseModel):
    """Last background pass of one account and resource type."""

    account_id: str
    resource_type: ResourceType
    last_synced_at: datetime
    record_count: int = 0


class ServerCacheStore(Protocol):
    """Shared cache tier keyed by EnrichmentKey."""

    async def get(self, key: EnrichmentKey) -> CacheEntry[StoredValue] | None: ...

    async def put(
        self, key: EnrichmentKey, value: StoredValue, ttl: timedelta | None = None
    ) -> None: ...

    async def list_stale(
        self, account_id: str, threshold: timedelta
    ) -> list[EnrichmentKey]: ...

    async def invalidate(self, account_id: str) -> int: ...

    async def get_watermark(
        self, account_id: str, resource_type: ResourceType
    ) -> SyncWatermark | None: ...

    async def advance_watermark(
        self,
        account_id: str,
        resource_type: ResourceType,
        record_count: int,
        synced_at: datetime | None = None,
    ) -> SyncWatermark: ...


def _record_count(value: StoredValue) -> int:
    return len(value) if isinstance(value, list) else 1


def _is_partial(value: StoredValue) -> bool:
    if isinstance(value, list):
        return any(record.partial for record in value)
    return value.partial


class SqlServerCacheStore:
    """
    ServerCacheStore on SQLAlchemy async sessions.

    Usage:
        await init_db()
        store = SqlServerCacheStore()
        await store.put(key, record)
        entry = await store.get(key)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        default_ttl: timedelta | None = None,
        clock: Clock = utc_now,
    ):
        self._session_factory = session_factory
        if default_ttl is None:
            default_ttl = timedelta(hours=global_settings.server_cache_ttl_hours)
        self._default_ttl = default_ttl
        self._clock = clock

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            factory = self._session_factory or get_session_factory()
        except RuntimeError as e:
            raise CacheUnavailableError(str(e), service_id=STORE_SERVICE_ID) from e

        try:
            async with factory() as session:
                yield session
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            raise CacheUnavailableError(
                f"Server cache store unavailable: {e}", service_id=STORE_SERVICE_ID
            ) from e

    async def get(self, key: EnrichmentKey) -> CacheEntry[StoredValue] | None:
        async with self._session() as session:
            repo = EnrichmentCacheRepository(session)
            row = await repo.get(key)
            if row is None:
                return None

            entry = self._to_entry(key, row)
            if entry is None or not entry.is_valid(self._clock()):
                await repo.delete(key)
                logger.debug(f"Purged expired or unreadable server cache row {key}")
                return None
            return entry

    def _to_entry(
        self, key: EnrichmentKey, row: EnrichmentCacheDB
    ) -> CacheEntry[StoredValue] | None:
        try:
            value = _VALUE_ADAPTER.validate_json(row.payload)
        except ValidationError as e:
            logger.warning(f"Corrupt server cache payload for {key}: {e}")
            return None
        return CacheEntry(
            key=key,
            value=value,
            stored_at=row.stored_at,
            ttl=timedelta(seconds=row.ttl_seconds),
        )

    async def put(
        self, key: EnrichmentKey, value: StoredValue, ttl: timedelta | None = None
    ) -> None:
        """Overwrite the entry of ``key``; the latest write wins."""
        if ttl is None:
            ttl = self._default_ttl
        payload = _VALUE_ADAPTER.dump_json(value).decode()
        stored_at = self._clock()

        # A concurrent first insert of the same key loses the unique race; redo as update.
        for attempt in range(2):
            try:
                async with self._session() as session:
                    await EnrichmentCacheRepository(session).upsert(
                        key,
                        payload=payload,
                        stored_at=stored_at,
                        ttl_seconds=ttl.total_seconds(),
                        partial=_is_partial(value),
                        record_count=_record_count(value),
                    )
                return
            except CacheUnavailableError as e:
                if attempt == 0 and isinstance(e.__cause__, IntegrityError):
                    continue
                raise

    async def list_stale(self, account_id: str, threshold: timedelta) -> list[EnrichmentKey]:
        """Keys of ``account_id`` written at least ``threshold`` ago."""
        cutoff = self._clock() - threshold
        async with self._session() as session:
            rows = await EnrichmentCacheRepository(session).list_stored_before(
                account_id, cutoff
            )
        return [
            EnrichmentKey(
                account_id=row.account_id,
                resource_type=ResourceType(row.resource_type),
                resource_id=row.resource_id,
            )
            for row in rows
        ]

    async def invalidate(self, account_id: str) -> int:
        async with self._session() as session:
            return await EnrichmentCacheRepository(session).delete_account(account_id)

    async def get_watermark(
        self, account_id: str, resource_type: ResourceType
    ) -> SyncWatermark | None:
        async with self._session() as session:
            row = await SyncWatermarkRepository(session).get(account_id, resource_type.value)
            if row is None:
                return None
            return SyncWatermark(
                account_id=row.account_id,
                resource_type=ResourceType(row.resource_type),
                last_synced_at=row.last_synced_at,
                record_count=row.record_count,
            )

    async def advance_watermark(
        self,
        account_id: str,
        resource_type: ResourceType,
        record_count: int,
        synced_at: datetime | None = None,
    ) -> SyncWatermark:
        async with self._session() as session:
            row = await SyncWatermarkRepository(session).advance(
                account_id,
                resource_type.value,
                record_count=record_count,
                synced_at=synced_at or self._clock(),
            )
            return SyncWatermark(
                account_id=row.account_id,
                resource_type=ResourceType(row.resource_type),
                last_synced_at=row.last_synced_at,
                record_count=row.record_count,
            )
