"""Replay of unbilled usage from the outbox.

Rows land in ``unbilled_usage`` when metering fails after the caller already
received the upstream result.  A replay pass re-prices each pending row and
runs the same atomic charge the live path uses, claiming the row inside that
transaction so two concurrent passes can never bill it twice.  Rows that still
cannot be charged stay pending with ``attempts`` incremented.

Runs from Celery Beat (tollgate/billing/tasks.py) or ``tollgate reconcile``.
"""

from __future__ import annotations

import logging
from typing import Any

import redis.asyncio as aioredis
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import async_sessionmaker

from tollgate.billing.ledger import OutboxEntryResolved, UsageCharge, charge
from tollgate.billing.pricing import PricingTable, compute_cost
from tollgate.config import Settings
from tollgate.db.models import UnbilledUsage
from tollgate.db.session import create_engine, create_session_factory

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


async def replay_unbilled(
    session_factory: async_sessionmaker,
    redis_conn: aioredis.Redis,
    pricing: PricingTable,
    limit: int = DEFAULT_BATCH_SIZE,
) -> dict[str, int]:
    """Attempt to charge up to ``limit`` pending outbox rows.

    Rows are taken fewest attempts first, then oldest first.  A failed replay
    bumps ``attempts``, so rows of accounts that stay unable to pay sink
    behind newer rows instead of filling every batch.

    Returns:
        Dict with ``replayed``, ``failed`` and ``skipped`` counts.
    """
    async with session_factory() as session:
        result = await session.execute(
            sa.select(UnbilledUsage)
            .where(UnbilledUsage.resolved_at.is_(None))
            .order_by(
                UnbilledUsage.attempts.asc(),
                UnbilledUsage.created_at.asc(),
                UnbilledUsage.id.asc(),
            )
            .limit(limit)
        )
        pending = result.scalars().all()

    counts = {"replayed": 0, "failed": 0, "skipped": 0}
    for entry in pending:
        price = pricing.lookup(entry.model)
        usage = UsageCharge(
            model=entry.model,
            provider=price.provider,
            tokens=entry.tokens,
            cost=compute_cost(entry.tokens, price.price_per_1k),
            endpoint=entry.endpoint,
            metadata=entry.response_metadata or {},
        )
        try:
            await charge(
                session_factory,
                redis_conn,
                entry.account_id,
                entry.key_id,
                usage,
                outbox_id=entry.id,
            )
        except OutboxEntryResolved:
            counts["skipped"] += 1
            continue
        except Exception as exc:
            counts["failed"] += 1
            logger.warning("Replay of unbilled usage %s failed: %s", entry.id, exc)
            await _mark_attempt(session_factory, entry.id, _describe(exc))
            continue
        counts["replayed"] += 1

    if pending:
        logger.info(
            "Reconciliation pass: replayed=%d failed=%d skipped=%d",
            counts["replayed"],
            counts["failed"],
            counts["skipped"],
        )
    return counts


async def _mark_attempt(session_factory: async_sessionmaker, entry_id: int, reason: str) -> None:
    async with session_factory() as session:
        await session.execute(
            sa.update(UnbilledUsage)
            .where(UnbilledUsage.id == entry_id)
            .values(attempts=UnbilledUsage.attempts + 1, reason=reason[:255])
        )
        await session.commit()


def _describe(exc: Exception) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


async def run_reconciliation(settings: Settings, pricing: PricingTable, limit: int) -> dict[str, Any]:
    """One standalone replay pass with its own engine and Redis connection."""
    engine = create_engine(settings.database_url)
    redis_conn = aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    try:
        return await replay_unbilled(
            create_session_factory(engine), redis_conn, pricing, limit=limit
        )
    finally:
        await redis_conn.aclose()
        await engine.dispose()
