"""Synchronous database client for Tollgate CLI operations.

Uses SQLAlchemy sync engine (postgresql://) instead of the async engine used
by the server.  This avoids asyncio event loop issues when Typer commands
call DB functions directly from a non-async context.

The sync URL is derived from settings.database_url by stripping the +asyncpg
(or +aiosqlite) driver suffix so the psycopg2 (or stdlib sqlite3) driver is
used instead.
"""

from __future__ import annotations

import datetime
import functools
import logging
from decimal import Decimal

import redis
import sqlalchemy as sa
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from tollgate.config import settings
from tollgate.db.models import Account, ApiKey, Plan, UsageRecord
from tollgate.db.session import sync_database_url
from tollgate.security.api_key import cache_key, generate_api_key

logger = logging.getLogger(__name__)

PERIODS = ("day", "week", "month", "all")


# ---------------------------------------------------------------------------
# Sync engine + session factory
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=4)
def _session_factory(database_url: str) -> sessionmaker:
    engine = create_engine(sync_database_url(database_url), pool_pre_ping=True)
    return sessionmaker(bind=engine, expire_on_commit=False)


def SessionFactory():
    """Open a sync session against the currently configured database."""
    return _session_factory(settings.database_url)()


# ---------------------------------------------------------------------------
# Key management
# ---------------------------------------------------------------------------


def issue_key(account_id: int, name: str = "Default Key") -> tuple[str, ApiKey]:
    """Create a new API key for an account and return the raw key once.

    Raises:
        ValueError: If the account does not exist.
    """
    raw_key, key_prefix, key_digest = generate_api_key()
    with SessionFactory() as session:
        if session.get(Account, account_id) is None:
            raise ValueError(f"Account {account_id} not found.")
        api_key = ApiKey(
            account_id=account_id,
            name=name,
            key=key_digest,
            key_prefix=key_prefix,
            active=True,
        )
        session.add(api_key)
        session.commit()
        session.refresh(api_key)
        session.expunge(api_key)
    return raw_key, api_key


def disable_key(key_id: int) -> ApiKey:
    """Deactivate a key and evict its cached entry.

    Raises:
        ValueError: If the key does not exist.
    """
    with SessionFactory() as session:
        api_key = session.get(ApiKey, key_id)
        if api_key is None:
            raise ValueError(f"API key {key_id} not found.")
        api_key.active = False
        session.commit()
        session.expunge(api_key)

    evict_cached_key(api_key.key)
    return api_key


def list_keys(account_id: int) -> list[ApiKey]:
    """Return every key of an account, active or not, oldest first.

    Raises:
        ValueError: If the account does not exist.
    """
    with SessionFactory() as session:
        if session.get(Account, account_id) is None:
            raise ValueError(f"Account {account_id} not found.")
        keys = session.execute(
            sa.select(ApiKey).where(ApiKey.account_id == account_id).order_by(ApiKey.id)
        ).scalars().all()
        session.expunge_all()
    return list(keys)


def account_profile(account_id: int) -> dict:
    """Balance and plan details for one account.

    Raises:
        ValueError: If the account does not exist.
    """
    with SessionFactory() as session:
        row = session.execute(
            sa.select(
                Account.id,
                Account.name,
                Account.balance,
                Account.created_at,
                Plan.name.label("plan_name"),
                Plan.rate_limit_per_minute,
                Plan.monthly_quota,
            )
            .join(Plan, Account.plan_id == Plan.id)
            .where(Account.id == account_id)
        ).one_or_none()
    if row is None:
        raise ValueError(f"Account {account_id} not found.")
    return dict(row._mapping)


def evict_cached_key(key_digest: str) -> None:
    """Drop a key's cache entry so the deactivation applies immediately.

    Best-effort: if Redis is unreachable the entry still expires on its TTL.
    """
    try:
        client = redis.Redis.from_url(settings.redis_url)
        try:
            client.delete(cache_key(key_digest))
        finally:
            client.close()
    except redis.RedisError:
        logger.warning("Could not evict cached key %s…", key_digest[:8], exc_info=True)


# ---------------------------------------------------------------------------
# Usage reporting
# ---------------------------------------------------------------------------


def period_start(period: str, now: datetime.datetime | None = None) -> datetime.datetime | None:
    """Start of the reporting window, or None for ``"all"``."""
    if period not in PERIODS:
        raise ValueError(f"Unknown period {period!r}; expected one of {', '.join(PERIODS)}")
    now = now or datetime.datetime.now(datetime.timezone.utc)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "day":
        return midnight
    if period == "week":
        return midnight - datetime.timedelta(days=7)
    if period == "month":
        return midnight.replace(day=1)
    return None


def usage_stats(account_id: int, period: str = "month") -> dict:
    """Return usage summary and per-day/model/provider breakdown.

    Returns:
        Dict with ``summary`` (total_requests, total_tokens, total_cost) and
        ``stats`` (list of dicts, newest day first, costliest first, max 100).
    """
    start = period_start(period)
    filters = [UsageRecord.account_id == account_id]
    if start is not None:
        filters.append(UsageRecord.created_at >= start)

    day = sa.func.date(UsageRecord.created_at).label("date")
    total_cost = sa.func.sum(UsageRecord.cost).label("total_cost")

    with SessionFactory() as session:
        rows = session.execute(
            sa.select(
                day,
                UsageRecord.model,
                UsageRecord.provider,
                sa.func.count(UsageRecord.id).label("total_requests"),
                sa.func.sum(UsageRecord.tokens).label("total_tokens"),
                total_cost,
            )
            .where(*filters)
            .group_by(day, UsageRecord.model, UsageRecord.provider)
            .order_by(day.desc(), total_cost.desc())
            .limit(100)
        ).all()

        summary = session.execute(
            sa.select(
                sa.func.count(UsageRecord.id),
                sa.func.sum(UsageRecord.tokens),
                sa.func.sum(UsageRecord.cost),
            ).where(*filters)
        ).one()

    return {
        "summary": {
            "total_requests": summary[0] or 0,
            "total_tokens": summary[1] or 0,
            "total_cost": Decimal(summary[2] or 0),
        },
        "stats": [
            {
                "date": str(row.date),
                "model": row.model,
                "provider": row.provider,
                "total_requests": row.total_requests,
                "total_tokens": row.total_tokens or 0,
                "total_cost": Decimal(row.total_cost or 0),
            }
            for row in rows
        ],
    }
