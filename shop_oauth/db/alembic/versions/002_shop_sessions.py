"""Shop session table.

Revision ID: 002
Revises: 001
Create Date: 2026-10-16

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "shop_sessions",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("shop", sa.String(255), nullable=False),
        sa.Column("is_online", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("scope", sa.Text),
        sa.Column("access_token", sa.Text, nullable=False),
        sa.Column("expires_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime),
        sa.Column("updated_at", sa.DateTime),
    )
    op.create_index("ix_shop_sessions_shop", "shop_sessions", ["shop"])


def downgrade() -> None:
    op.drop_index("ix_shop_sessions_shop", table_name="shop_sessions")
    op.drop_table("shop_sessions")
