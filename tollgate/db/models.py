"""SQLAlchemy ORM models for the Tollgate durable store.

Tables:
- plans          : named tiers with price and per-minute rate ceiling (read-only to the core)
- accounts       : billable entities holding a prepaid balance and a plan
- api_keys       : hashed bearer credentials mapped to an account
- usage_records  : append-only audit trail, one row per billed request
- unbilled_usage : outbox of metering attempts that failed after a successful upstream call

Balances and costs are Numeric(14, 6) so micro-unit costs are representable
without float drift on PostgreSQL.  JSON columns use JSONB on PostgreSQL and
plain JSON elsewhere (SQLite in tests).
"""

from __future__ import annotations

import datetime
from decimal import Decimal
from typing import Any

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
Money = sa.Numeric(14, 6)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Base(DeclarativeBase):
    pass


class Plan(Base):
    __tablename__ = "plans"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True)
    name: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    # Informational only; charges use the per-model PricingTable.
    price_per_1k: Mapped[Decimal] = mapped_column(sa.Numeric(8, 4), nullable=False)
    monthly_quota: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    rate_limit_per_minute: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, default=60, server_default="60"
    )


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True)
    name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    balance: Mapped[Decimal] = mapped_column(
        Money, nullable=False, default=Decimal("100.00"), server_default="100.00"
    )
    plan_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("plans.id"), nullable=False, default=1
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=_utcnow
    )

    plan: Mapped[Plan] = relationship()


class ApiKey(Base):
    __tablename__ = "api_keys"
    __table_args__ = (sa.UniqueConstraint("key", name="uq_api_keys_key"),)

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("accounts.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(sa.String(100), nullable=False, default="Default Key")
    # SHA-256 hex digest of the raw key: the raw key is never stored
    key: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    key_prefix: Mapped[str] = mapped_column(sa.String(8), nullable=False)
    active: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=True, server_default=sa.true()
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=_utcnow
    )
    last_used_at: Mapped[datetime.datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )


class UsageRecord(Base):
    __tablename__ = "usage_records"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("accounts.id"), nullable=False, index=True
    )
    key_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("api_keys.id"), nullable=False
    )
    model: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    provider: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    tokens: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    request_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)
    endpoint: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    cost: Mapped[Decimal] = mapped_column(Money, nullable=False)
    response_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )


class UnbilledUsage(Base):
    __tablename__ = "unbilled_usage"
    __table_args__ = (
        sa.Index(
            "ix_unbilled_usage_pending",
            "attempts",
            "created_at",
            postgresql_where=sa.text("resolved_at IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    key_id: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    model: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    tokens: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    endpoint: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    response_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    reason: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    resolved_at: Mapped[datetime.datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=_utcnow
    )
