"""
Database tables for the click ledger and the correlation lease.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, Index, JSON, String, Text

from src.db.tables import Base


class ClickLogRow(Base):
    """One row per issued tracked link. Never deleted."""
    __tablename__ = "click_logs"

    id = Column(String(32), primary_key=True)
    customer_ref = Column(String(200), nullable=False, index=True)
    product_ref = Column(String(500), nullable=False)
    item_id = Column(String(64), nullable=True, index=True)  # marketplace item, e.g. MLM123
    original_url = Column(Text, nullable=False)
    tracked_url = Column(String(1000), nullable=False)
    campaign_ref = Column(String(100), nullable=True, index=True)

    # Customer snapshot supplied by the bot (corroborating signals)
    customer_name = Column(String(200), nullable=True)
    customer_city = Column(String(200), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    # First click only
    clicked_at = Column(DateTime(timezone=True), nullable=True)
    user_agent = Column(String(500), nullable=True)
    ip_address = Column(String(45), nullable=True)  # IPv6 support
    referrer = Column(String(1000), nullable=True)

    # Attribution (written once, all together)
    converted = Column(Boolean, default=False, nullable=False)
    converted_at = Column(DateTime(timezone=True), nullable=True)
    order_id = Column(String(100), unique=True, nullable=True)  # one attribution per order
    revenue = Column(Float, nullable=True)  # denormalized conversion_data.totalAmount
    conversion_data = Column(JSON, nullable=True)
    correlation_method = Column(String(20), nullable=True)
    correlation_confidence = Column(String(10), nullable=True)
    is_orphan = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("ix_click_logs_customer_created", "customer_ref", "created_at"),
        Index("ix_click_logs_converted_created", "converted", "created_at"),
    )


class CorrelationLeaseRow(Base):
    """Ledger-wide mutual exclusion for non-dry-run correlation executions."""
    __tablename__ = "correlation_leases"

    name = Column(String(64), primary_key=True)
    owner = Column(String(64), nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
