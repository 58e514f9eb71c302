"""Initial schema: plans, accounts, api_keys, usage_records.

Revision ID: 001
Revises:
Create Date: 2026-10-18

Creates:
- plans          : pricing tiers (seeded with Basic / Pro / Enterprise)
- accounts       : billable entities with a prepaid balance and a plan
- api_keys       : SHA-256 digests of issued keys, owned by an account
- usage_records  : append-only audit trail of billed requests

Indexes:
- uq_api_keys_key               : unique digest, the authentication lookup path
- ix_api_keys_account_id        : per-account cache invalidation after a debit
- ix_usage_records_account_id   : per-account usage reports
- ix_usage_records_created_at   : period filters on usage reports

Design notes:
- balance and cost are NUMERIC(14, 6): costs are rounded up to micro-units
- the raw key is never stored: only its digest and an 8-char display prefix
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers used by Alembic
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    plans = op.create_table(
        "plans",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(50), nullable=False),
        sa.Column("price_per_1k", sa.Numeric(8, 4), nullable=False),
        sa.Column("monthly_quota", sa.Integer, nullable=True),
        sa.Column("rate_limit_per_minute", sa.Integer, nullable=False, server_default="60"),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("balance", sa.Numeric(14, 6), nullable=False, server_default="100.00"),
        sa.Column("plan_id", sa.Integer, sa.ForeignKey("plans.id"), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "api_keys",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("account_id", sa.Integer, sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("name", sa.String(100), nullable=False, server_default="Default Key"),
        sa.Column("key", sa.String(64), nullable=False),
        sa.Column("key_prefix", sa.String(8), nullable=False),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_unique_constraint("uq_api_keys_key", "api_keys", ["key"])
    op.create_index("ix_api_keys_account_id", "api_keys", ["account_id"])

    op.create_table(
        "usage_records",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("account_id", sa.Integer, sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("key_id", sa.Integer, sa.ForeignKey("api_keys.id"), nullable=False),
        sa.Column("model", sa.String(100), nullable=False),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("tokens", sa.Integer, nullable=False),
        sa.Column("request_count", sa.Integer, nullable=False, server_default="1"),
        sa.Column("endpoint", sa.String(100), nullable=False),
        sa.Column("cost", sa.Numeric(14, 6), nullable=False),
        sa.Column("metadata", JSONType, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_usage_records_account_id", "usage_records", ["account_id"])
    op.create_index("ix_usage_records_created_at", "usage_records", ["created_at"])

    op.bulk_insert(
        plans,
        [
            {"id": 1, "name": "Basic", "price_per_1k": 0.0020, "monthly_quota": 10000, "rate_limit_per_minute": 60},
            {"id": 2, "name": "Pro", "price_per_1k": 0.0018, "monthly_quota": 100000, "rate_limit_per_minute": 120},
            {"id": 3, "name": "Enterprise", "price_per_1k": 0.0015, "monthly_quota": 1000000, "rate_limit_per_minute": 300},
        ],
    )


def downgrade() -> None:
    op.drop_index("ix_usage_records_created_at", table_name="usage_records")
    op.drop_index("ix_usage_records_account_id", table_name="usage_records")
    op.drop_table("usage_records")
    op.drop_index("ix_api_keys_account_id", table_name="api_keys")
    op.drop_constraint("uq_api_keys_key", "api_keys", type_="unique")
    op.drop_table("api_keys")
    op.drop_table("accounts")
    op.drop_table("plans")
