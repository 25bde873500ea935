"""OAuth state table.

Revision ID: 001
Revises:
Create Date: 2026-10-16

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "oauth_states",
        sa.Column("id", sa.CHAR(32), primary_key=True),
        sa.Column("shop", sa.String(255), unique=True, nullable=False),
        sa.Column("nonce", sa.String(128), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("expires_at", sa.DateTime, nullable=False),
        sa.Column("used_at", sa.DateTime),
        sa.Column("request_ip", sa.String(64)),
        sa.Column("user_agent", sa.Text),
    )

    # Sweeps filter on status + expiry
    op.create_index(
        "ix_oauth_states_status_expires_at", "oauth_states", ["status", "expires_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_oauth_states_status_expires_at", table_name="oauth_states")
    op.drop_table("oauth_states")
