"""create_user_quotas_and_payment_sessions

Revision ID: 3f9a1c2d7e4b
Revises:
Create Date: 2026-10-18 09:12:41.208114

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9a1c2d7e4b"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create user_quotas and payment_sessions tables."""
    op.create_table(
        "user_quotas",
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("tier", sa.String(length=50), nullable=False),
        sa.Column("free_generations_used_today", sa.Integer(), nullable=False),
        sa.Column("free_daily_limit", sa.Integer(), nullable=False),
        sa.Column("credit_balance", sa.Integer(), nullable=False),
        sa.Column("last_reset_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("user_id"),
        sa.CheckConstraint(
            "credit_balance >= 0", name="ck_user_quotas_credit_balance_non_negative"
        ),
        sa.CheckConstraint(
            "free_generations_used_today <= free_daily_limit",
            name="ck_user_quotas_free_usage_within_limit",
        ),
    )

    # grant_source is stored as a native enum on PostgreSQL
    grant_source = sa.Enum("VERIFY", "WEBHOOK", name="grantsource")
    op.create_table(
        "payment_sessions",
        sa.Column("session_id", sa.String(length=255), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("package_id", sa.String(length=50), nullable=False),
        sa.Column("credits_granted", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("grant_source", grant_source, nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("session_id"),
    )
    op.create_index(
        "ix_payment_sessions_user_id", "payment_sessions", ["user_id"], unique=False
    )


def downgrade() -> None:
    """Drop user_quotas and payment_sessions tables."""
    op.drop_index("ix_payment_sessions_user_id", table_name="payment_sessions")
    op.drop_table("payment_sessions")
    sa.Enum(name="grantsource").drop(op.get_bind(), checkfirst=True)
    op.drop_table("user_quotas")
