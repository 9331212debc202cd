"""Per-affiliate commission rate

Revision ID: 002
Revises: 001
Create Date: 2026-10-17 12:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    op.add_column(
        "affiliates",
        sa.Column("commission_rate_percent", sa.Numeric(precision=5, scale=2), nullable=True),
    )


def downgrade() -> None:
    """Downgrade database schema."""
    with op.batch_alter_table("affiliates") as batch_op:
        batch_op.drop_column("commission_rate_percent")
