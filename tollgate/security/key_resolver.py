"""API key resolution with a short-TTL Redis cache in front of the store.

Resolution steps for a presented credential:
1. Missing credential -> ``Unauthenticated``.
2. Look up ``api_key:<digest>`` in Redis; a hit is deserialized and used as-is.
3. On a miss, join api_keys -> accounts -> plans for an *active* key.  No row
   -> ``InvalidCredential``.  Otherwise the joined row is cached for
   ``KEY_CACHE_TTL_SECONDS``.
4. Stamp ``api_keys.last_used_at`` (best-effort, never fails the request).
5. A balance <= 0 -> ``InsufficientBalance``.

The cached balance may be up to ``KEY_CACHE_TTL_SECONDS`` stale.  The cache is
a read-through accelerator only: the usage ledger deletes every cached entry
of an account after each debit, and the debit itself re-checks the balance
in the store.
"""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal
from typing import Iterable, Mapping

import redis.asyncio as aioredis
import sqlalchemy as sa
from pydantic import BaseModel

from tollgate.context import ServiceContext
from tollgate.db.models import Account, ApiKey, Plan
from tollgate.errors import (
    InsufficientBalance,
    InternalError,
    InvalidCredential,
    TollgateError,
    Unauthenticated,
)
from tollgate.security.api_key import cache_key, digest_api_key

logger = logging.getLogger(__name__)

KEY_CACHE_TTL_SECONDS = 300
DEFAULT_RATE_LIMIT_PER_MINUTE = 60


class KeyContext(BaseModel):
    """Denormalized join of ApiKey + Account balance/plan + Plan rate limit.

    This is the value stored in the key cache, so every field must survive a
    JSON round trip (Decimal is serialized as a string by pydantic).
    """

    key_id: int
    key_digest: str
    account_id: int
    plan_id: int
    balance: Decimal
    rate_limit_per_minute: int = DEFAULT_RATE_LIMIT_PER_MINUTE


def extract_credential(headers: Mapping[str, str]) -> str | None:
    """Return the API key from ``X-API-Key`` or ``Authorization: Bearer``."""
    api_key = headers.get("x-api-key")
    if api_key:
        return api_key.strip()
    authorization = headers.get("authorization")
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    return None


async def resolve_key(ctx: ServiceContext, raw_key: str | None) -> KeyContext:
    """Resolve a raw credential to its account context.

    Raises:
        Unauthenticated:     No credential was presented.
        InvalidCredential:   Unknown or disabled key.
        InsufficientBalance: Last-known balance is zero or negative.
        InternalError:       Store or cache failure during lookup.
    """
    if not raw_key:
        raise Unauthenticated()

    key_digest = digest_api_key(raw_key)
    try:
        entry = await _load_entry(ctx, key_digest)
    except TollgateError:
        raise
    except Exception as exc:
        logger.error("API authentication error", exc_info=True)
        raise InternalError("Authentication failed") from exc

    await touch_last_used(ctx, entry.key_id)

    if entry.balance <= 0:
        raise InsufficientBalance()
    return entry


async def _load_entry(ctx: ServiceContext, key_digest: str) -> KeyContext:
    cached = await ctx.redis.get(cache_key(key_digest))
    if cached is not None:
        return KeyContext.model_validate_json(cached)

    async with ctx.session() as session:
        result = await session.execute(
            sa.select(
                ApiKey.id,
                ApiKey.account_id,
                Account.balance,
                Account.plan_id,
                Plan.rate_limit_per_minute,
            )
            .join(Account, ApiKey.account_id == Account.id)
            .join(Plan, Account.plan_id == Plan.id)
            .where(ApiKey.key == key_digest, ApiKey.active == True)  # noqa: E712
        )
        row = result.one_or_none()

    if row is None:
        raise InvalidCredential()

    entry = KeyContext(
        key_id=row.id,
        key_digest=key_digest,
        account_id=row.account_id,
        plan_id=row.plan_id,
        balance=row.balance,
        rate_limit_per_minute=row.rate_limit_per_minute or DEFAULT_RATE_LIMIT_PER_MINUTE,
    )
    await ctx.redis.set(
        cache_key(key_digest), entry.model_dump_json(), ex=KEY_CACHE_TTL_SECONDS
    )
    return entry


async def touch_last_used(ctx: ServiceContext, key_id: int) -> None:
    """Record the key's last-used time in the store; failures are only logged."""
    now = datetime.datetime.fromtimestamp(ctx.clock(), datetime.timezone.utc)
    try:
        async with ctx.session() as session:
            await session.execute(
                sa.update(ApiKey).where(ApiKey.id == key_id).values(last_used_at=now)
            )
            await session.commit()
    except Exception:
        logger.warning("Failed to record last_used_at for key %s", key_id, exc_info=True)


async def invalidate_cached_keys(redis_conn: aioredis.Redis, key_digests: Iterable[str]) -> int:
    """Delete cached entries for the given key digests; returns keys removed."""
    names = [cache_key(digest) for digest in key_digests]
    if not names:
        return 0
    return await redis_conn.delete(*names)
