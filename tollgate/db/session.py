"""Async database engine and session factory construction for Tollgate.

Usage:
    engine = create_engine(settings.database_url)
    session_factory = create_session_factory(engine)

    async with session_factory() as session:
        result = await session.execute(select(Account))

There is no module-level engine: the server creates one in its lifespan and
hands the factory to request handlers through the ServiceContext
(tollgate/context.py), and disposes it on shutdown.

IMPORTANT: Each request/operation must get its own session from the factory.
AsyncSession is NOT safe to share across concurrent coroutines or requests.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine


def create_engine(database_url: str, **kwargs) -> AsyncEngine:
    """Create the process-wide async engine.

    Pool sizing only applies to server databases; SQLite URLs get the
    driver's defaults.
    """
    if not database_url.startswith("sqlite"):
        kwargs.setdefault("pool_size", 10)
        kwargs.setdefault("max_overflow", 20)
        kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(database_url, echo=False, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    # expire_on_commit=False keeps ORM objects accessible after commit
    return async_sessionmaker(engine, expire_on_commit=False)


def sync_database_url(database_url: str) -> str:
    """Derive a sync driver URL from the async one (used by the CLI).

    e.g. "postgresql+asyncpg://..." -> "postgresql://..."
    """
    return database_url.replace("+asyncpg", "").replace("+aiosqlite", "")
