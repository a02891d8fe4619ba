"""
Shared fixtures: fake clock, stubbed marketplace client, in-memory SQLite store.
"""

from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from fakes import BASE_URL, FakeClock, InMemoryServerCacheStore, MarketplaceStub, no_sleep
from marketsync.datastore.engine import create_session_factory
from marketsync.datastore.models import Base
from marketsync.datastore.store import SqlServerCacheStore
from marketsync.services.account_gate import AccountGateRegistry
from marketsync.services.client import MarketplaceClient
from marketsync.services.retry import RetryPolicy


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stub() -> MarketplaceStub:
    return MarketplaceStub()


@pytest_asyncio.fixture
async def client(stub, clock):
    marketplace = MarketplaceClient(
        base_url=BASE_URL,
        retry_policy=RetryPolicy.default(
            transient_attempts=1, transient_jitter=0.0, sleep=no_sleep
        ),
        gates=AccountGateRegistry(clock=clock),
        default_retry_after=30.0,
        transport=stub.transport(),
    )
    yield marketplace
    await marketplace.close()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield create_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def sql_store(session_factory, clock) -> SqlServerCacheStore:
    return SqlServerCacheStore(session_factory, default_ttl=timedelta(hours=1), clock=clock)


@pytest.fixture
def memory_store(clock) -> InMemoryServerCacheStore:
    return InMemoryServerCacheStore(clock)
