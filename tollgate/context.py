"""Process-wide service handles passed explicitly to every pipeline stage.

The store engine, Redis client and upstream HTTP client are acquired once at
startup by :func:`open_context` and released when the context exits.  Request
handlers receive the context through ``app.state.context`` (see
tollgate/api/deps.py) instead of importing module-level singletons, which also
lets tests build a context around SQLite, an in-memory Redis double and a
mocked upstream transport.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

import httpx
import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from tollgate.billing.pricing import DEFAULT_PRICING, PricingTable
from tollgate.config import Settings
from tollgate.db.session import create_engine, create_session_factory

logger = logging.getLogger(__name__)

# Upper bound on a single upstream call (connect + read), in seconds.
UPSTREAM_TIMEOUT_SECONDS = 120.0


@dataclass
class ServiceContext:
    """Shared, concurrency-safe handles used by the metering pipeline."""

    settings: Settings
    session_factory: async_sessionmaker
    redis: aioredis.Redis
    http: httpx.AsyncClient
    pricing: PricingTable = DEFAULT_PRICING
    clock: Callable[[], float] = field(default=time.time)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a fresh AsyncSession, closed on exit."""
        async with self.session_factory() as session:
            yield session


@asynccontextmanager
async def open_context(settings: Settings) -> AsyncIterator[ServiceContext]:
    """Acquire store, cache and upstream clients; release them on exit."""
    engine: AsyncEngine = create_engine(settings.database_url)
    redis_conn = aioredis.from_url(
        settings.redis_url, encoding="utf-8", decode_responses=True
    )
    http = httpx.AsyncClient(timeout=httpx.Timeout(UPSTREAM_TIMEOUT_SECONDS))
    logger.info("Service context opened (upstream=%s)", settings.upstream_base_url)
    try:
        yield ServiceContext(
            settings=settings,
            session_factory=create_session_factory(engine),
            redis=redis_conn,
            http=http,
        )
    finally:
        await http.aclose()
        await redis_conn.aclose()
        await engine.dispose()
        logger.info("Service context closed")
