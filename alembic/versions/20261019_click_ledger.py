"""Add click_logs ledger and correlation_leases tables.

Revision ID: 7c41e9b2d0a3
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "7c41e9b2d0a3"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "click_logs",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("customer_ref", sa.String(200), nullable=False, index=True),
        sa.Column("product_ref", sa.String(500), nullable=False),
        sa.Column("item_id", sa.String(64), nullable=True, index=True),
        sa.Column("original_url", sa.Text, nullable=False),
        sa.Column("tracked_url", sa.String(1000), nullable=False),
        sa.Column("campaign_ref", sa.String(100), nullable=True, index=True),
        sa.Column("customer_name", sa.String(200), nullable=True),
        sa.Column("customer_city", sa.String(200), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("clicked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("referrer", sa.String(1000), nullable=True),
        sa.Column("converted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("order_id", sa.String(100), nullable=True, unique=True),
        sa.Column("revenue", sa.Float, nullable=True),
        sa.Column("conversion_data", sa.JSON, nullable=True),
        sa.Column("correlation_method", sa.String(20), nullable=True),
        sa.Column("correlation_confidence", sa.String(10), nullable=True),
        sa.Column("is_orphan", sa.Boolean, nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_click_logs_customer_created", "click_logs", ["customer_ref", "created_at"])
    op.create_index("ix_click_logs_converted_created", "click_logs", ["converted", "created_at"])

    op.create_table(
        "correlation_leases",
        sa.Column("name", sa.String(64), primary_key=True),
        sa.Column("owner", sa.String(64), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("correlation_leases")
    op.drop_index("ix_click_logs_converted_created", table_name="click_logs")
    op.drop_index("ix_click_logs_customer_created", table_name="click_logs")
    op.drop_table("click_logs")
