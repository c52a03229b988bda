"""Add send_once_settings and send_once_finalizations tables

The unique constraint on send_once_finalizations.campaign_id is the
concurrency guard for finalization: exactly one insert per campaign wins.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "send_once_settings",
        sa.Column(
            "campaign_id", sa.Integer,
            sa.ForeignKey("campaigns.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("send_once", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "send_once_finalizations",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "campaign_id", sa.Integer,
            sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_count", sa.Integer, nullable=False, server_default="0"),
        sa.UniqueConstraint("campaign_id", name="uq_send_once_finalizations_campaign_id"),
    )


def downgrade() -> None:
    op.drop_table("send_once_finalizations")
    op.drop_table("send_once_settings")
