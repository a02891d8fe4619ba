"""
Engine and session factory of the server cache database.

The cache is written by the background sync and by request-time loads at the
same time, so file-backed SQLite runs in WAL mode with a busy timeout.
"""

from pathlib import Path

from loguru import logger
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from marketsync.datastore.models import Base
from marketsync.settings import global_settings

SQLITE_BUSY_TIMEOUT_SECONDS = 15

engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def _sqlite_file(database_url: str) -> Path | None:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite" or url.database in (None, "", ":memory:"):
        return None
    return Path(url.database)


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


async def init_db(database_url: str | None = None, echo: bool | None = None) -> None:
    """Create the engine, the session factory and the cache tables."""
    global engine, AsyncSessionLocal

    database_url = database_url or global_settings.database_url
    sqlite_file = _sqlite_file(database_url)
    connect_args = {}
    if sqlite_file is not None:
        sqlite_file.parent.mkdir(parents=True, exist_ok=True)
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT_SECONDS

    engine = create_async_engine(
        database_url,
        echo=global_settings.database_echo if echo is None else echo,
        connect_args=connect_args,
    )
    AsyncSessionLocal = create_session_factory(engine)

    async with engine.begin() as conn:
        if sqlite_file is not None:
            await conn.exec_driver_sql("PRAGMA journal_mode=WAL")
        await conn.run_sync(Base.metadata.create_all)

    logger.info(f"Server cache database ready ({engine.url.render_as_string(hide_password=True)})")


async def close_db() -> None:
    global engine, AsyncSessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    AsyncSessionLocal = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory of the initialized database, for the store and the scheduler."""
    if AsyncSessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return AsyncSessionLocal
