"""Usage ledger: turns upstream usage into a debit and an audit record.

Metering applies only to endpoints whose responses carry a token ``usage``
object (chat completions, embeddings).  For those, the ledger:

1. prices the request from the pricing table (default rate for unknown models),
2. rejects it early if the last-known (cached) balance cannot cover the cost,
3. in ONE transaction, conditionally decrements the balance
   (``WHERE balance >= cost``) and appends the UsageRecord,
4. after commit, deletes the cached entries of every key on the account.

Step 3 is what keeps concurrent requests from driving a balance negative: the
check and the debit are the same statement, so two requests racing on a
balance that covers only one of them cannot both be charged.  The loser
raises ``InsufficientBalance`` with nothing written.  Because the upstream
call has already happened by then, that usage is *served but unbilled*; the
pipeline writes it to the ``unbilled_usage`` outbox (see
:func:`record_unbilled`) for tollgate/billing/reconcile.py to replay.
"""

from __future__ import annotations

import datetime
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import redis.asyncio as aioredis
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import async_sessionmaker

from tollgate.billing.pricing import PricingTable, compute_cost
from tollgate.context import ServiceContext
from tollgate.db.models import Account, ApiKey, UnbilledUsage, UsageRecord
from tollgate.errors import InsufficientBalance
from tollgate.security.key_resolver import KeyContext, invalidate_cached_keys

logger = logging.getLogger(__name__)

METERED_ENDPOINTS = ("/chat/completions", "/embeddings")
DEFAULT_MODEL = "gpt-3.5-turbo"


class OutboxEntryResolved(Exception):
    """The outbox entry being replayed was already resolved elsewhere."""


@dataclass(frozen=True)
class UsageCharge:
    """A priced usage event, ready to be debited."""

    model: str
    provider: str
    tokens: int
    cost: Decimal
    endpoint: str
    metadata: dict[str, Any] = field(default_factory=dict)


def is_metered_endpoint(endpoint: str) -> bool:
    return any(suffix in endpoint for suffix in METERED_ENDPOINTS)


def request_model(body: bytes) -> str:
    """Model named in the inbound JSON body, or ``DEFAULT_MODEL``."""
    try:
        payload = json.loads(body) if body else None
    except (ValueError, UnicodeDecodeError):
        return DEFAULT_MODEL
    if isinstance(payload, dict) and isinstance(payload.get("model"), str) and payload["model"]:
        return payload["model"]
    return DEFAULT_MODEL


def extract_tokens(payload: Any) -> int:
    """Billable units from a response's ``usage`` object (0 when absent).

    Completions report ``total_tokens``; some embedding backends only report
    ``prompt_tokens``.
    """
    if not isinstance(payload, dict):
        return 0
    usage = payload.get("usage")
    if not isinstance(usage, dict):
        return 0
    tokens = usage.get("total_tokens") or usage.get("prompt_tokens") or 0
    try:
        return max(0, int(tokens))
    except (TypeError, ValueError):
        return 0


def build_charge(
    pricing: PricingTable, endpoint: str, model: str, payload: Any
) -> UsageCharge | None:
    """Price a response, or return None when metering does not apply."""
    if not is_metered_endpoint(endpoint):
        return None
    tokens = extract_tokens(payload)
    if tokens <= 0:
        return None
    price = pricing.lookup(model)
    return UsageCharge(
        model=model,
        provider=price.provider,
        tokens=tokens,
        cost=compute_cost(tokens, price.price_per_1k),
        endpoint=endpoint,
        metadata={"usage": payload.get("usage"), "model": payload.get("model")},
    )


async def charge(
    session_factory: async_sessionmaker,
    redis_conn: aioredis.Redis,
    account_id: int,
    key_id: int,
    usage: UsageCharge,
    *,
    outbox_id: int | None = None,
) -> UsageRecord:
    """Debit the account and append the usage record atomically.

    When ``outbox_id`` is given the matching unbilled_usage row is marked
    resolved in the same transaction.

    Raises:
        InsufficientBalance:  The stored balance does not cover ``usage.cost``.
        OutboxEntryResolved:  ``outbox_id`` was already resolved.
    """
    async with session_factory() as session:
        async with session.begin():
            if outbox_id is not None:
                claimed = await session.execute(
                    sa.update(UnbilledUsage)
                    .where(UnbilledUsage.id == outbox_id, UnbilledUsage.resolved_at.is_(None))
                    .values(resolved_at=datetime.datetime.now(datetime.timezone.utc))
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    raise OutboxEntryResolved(outbox_id)

            debited = await session.execute(
                sa.update(Account)
                .where(Account.id == account_id, Account.balance >= usage.cost)
                .values(balance=Account.balance - usage.cost)
                .execution_options(synchronize_session=False)
            )
            if debited.rowcount != 1:
                raise InsufficientBalance()

            record = UsageRecord(
                account_id=account_id,
                key_id=key_id,
                model=usage.model,
                provider=usage.provider,
                tokens=usage.tokens,
                request_count=1,
                endpoint=usage.endpoint,
                cost=usage.cost,
                response_metadata=usage.metadata,
            )
            session.add(record)

            digests = (
                await session.execute(
                    sa.select(ApiKey.key).where(ApiKey.account_id == account_id)
                )
            ).scalars().all()

    try:
        await invalidate_cached_keys(redis_conn, digests)
    except Exception:
        # The entry still expires on its own TTL.
        logger.warning(
            "Failed to invalidate cached keys for account %s", account_id, exc_info=True
        )

    logger.info(
        "Charged %s for %d tokens (%s) to account %s",
        usage.cost,
        usage.tokens,
        usage.model,
        account_id,
    )
    return record


async def meter(
    ctx: ServiceContext,
    key_context: KeyContext,
    endpoint: str,
    model: str,
    payload: Any,
) -> UsageRecord | None:
    """Bill one upstream response for the authenticated key.

    Returns the new UsageRecord, or None when the response is not metered.

    Raises:
        InsufficientBalance: Cached or stored balance does not cover the cost.
    """
    usage = build_charge(ctx.pricing, endpoint, model, payload)
    if usage is None:
        return None

    if key_context.balance < usage.cost:
        raise InsufficientBalance()

    return await charge(
        ctx.session_factory, ctx.redis, key_context.account_id, key_context.key_id, usage
    )


async def record_unbilled(
    ctx: ServiceContext,
    key_context: KeyContext,
    endpoint: str,
    model: str,
    payload: Any,
    reason: str,
) -> UnbilledUsage | None:
    """Write a failed metering attempt to the outbox for later replay.

    If the outbox write fails too, the event is logged with every field so
    it can be reconstructed from logs.
    """
    tokens = extract_tokens(payload)
    if tokens <= 0:
        return None

    metadata = {"usage": payload.get("usage"), "model": payload.get("model")}
    try:
        async with ctx.session() as session:
            entry = UnbilledUsage(
                account_id=key_context.account_id,
                key_id=key_context.key_id,
                model=model,
                tokens=tokens,
                endpoint=endpoint,
                response_metadata=metadata,
                reason=reason[:255],
                attempts=0,
            )
            session.add(entry)
            await session.commit()
    except Exception:
        logger.error(
            "Unbilled usage lost from outbox: account=%s key=%s model=%s tokens=%d "
            "endpoint=%s reason=%s",
            key_context.account_id,
            key_context.key_id,
            model,
            tokens,
            endpoint,
            reason,
            exc_info=True,
        )
        return None

    logger.warning(
        "Unbilled usage queued for reconciliation: id=%s account=%s tokens=%d reason=%s",
        entry.id,
        key_context.account_id,
        tokens,
        reason,
    )
    return entry
