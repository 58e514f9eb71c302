"""Liveness probe covering the durable store and the Redis cache.

GET /health: 200 when both dependencies answer, 500 otherwise.
"""

from __future__ import annotations

import datetime
import logging

import sqlalchemy as sa
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from tollgate.api.deps import get_context
from tollgate.context import ServiceContext

logger = logging.getLogger(__name__)

health_router = APIRouter(tags=["health"])


@health_router.get("/health", operation_id="health")
async def health(ctx: ServiceContext = Depends(get_context)) -> JSONResponse:
    """Check the store with ``SELECT 1`` and Redis with ``PING``."""
    timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()
    try:
        async with ctx.session() as session:
            await session.execute(sa.text("SELECT 1"))
        await ctx.redis.ping()
    except Exception as exc:
        logger.warning("Health check failed: %s", exc)
        return JSONResponse(
            {"status": "unhealthy", "error": str(exc), "timestamp": timestamp},
            status_code=500,
        )

    return JSONResponse(
        {
            "status": "healthy",
            "database": "connected",
            "redis": "connected",
            "timestamp": timestamp,
        }
    )
