"""Create unbilled_usage outbox for failed post-response metering.

Revision ID: 002
Revises: 001
Create Date: 2026-10-18

Creates:
- unbilled_usage : usage served to a caller but not charged, awaiting replay

Columns:
- reason      : last failure description (e.g. "InsufficientBalance: ...")
- attempts    : replay attempts so far
- resolved_at : set in the same transaction as the successful charge

Indexes:
- ix_unbilled_usage_pending : partial index on (attempts, created_at) for
                              unresolved rows, the reconciliation scan order
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers used by Alembic
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "unbilled_usage",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("account_id", sa.Integer, nullable=False),
        sa.Column("key_id", sa.Integer, nullable=False),
        sa.Column("model", sa.String(100), nullable=False),
        sa.Column("tokens", sa.Integer, nullable=False),
        sa.Column("endpoint", sa.String(100), nullable=False),
        sa.Column("metadata", JSONType, nullable=True),
        sa.Column("reason", sa.String(255), nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_index(
        "ix_unbilled_usage_pending",
        "unbilled_usage",
        ["attempts", "created_at"],
        postgresql_where=sa.text("resolved_at IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("ix_unbilled_usage_pending", table_name="unbilled_usage")
    op.drop_table("unbilled_usage")
