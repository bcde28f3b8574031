"""add_quota_reservations

Revision ID: 8c41d0e5b2a7
Revises: 3f9a1c2d7e4b
Create Date: 2026-10-19 14:03:27.551902

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "8c41d0e5b2a7"
down_revision: Union[str, Sequence[str], None] = "3f9a1c2d7e4b"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add in-flight reservation counters to user_quotas."""
    op.add_column(
        "user_quotas",
        sa.Column("free_reserved", sa.Integer(), nullable=False, server_default="0"),
    )
    op.add_column(
        "user_quotas",
        sa.Column("credits_reserved", sa.Integer(), nullable=False, server_default="0"),
    )
    op.add_column("user_quotas", sa.Column("reserved_at", sa.DateTime(), nullable=True))
    op.create_check_constraint(
        "ck_user_quotas_free_reserved_non_negative", "user_quotas", "free_reserved >= 0"
    )
    op.create_check_constraint(
        "ck_user_quotas_credits_reserved_non_negative", "user_quotas", "credits_reserved >= 0"
    )


def downgrade() -> None:
    """Remove reservation counters from user_quotas."""
    op.drop_constraint(
        "ck_user_quotas_credits_reserved_non_negative", "user_quotas", type_="check"
    )
    op.drop_constraint("ck_user_quotas_free_reserved_non_negative", "user_quotas", type_="check")
    op.drop_column("user_quotas", "reserved_at")
    op.drop_column("user_quotas", "credits_reserved")
    op.drop_column("user_quotas", "free_reserved")
