"""Manual sale registration — human agents mark a conversation as a sale.

Bypasses correlation entirely: the agent has ground truth (phone order,
off-platform payment) the engine cannot infer.
"""
from __future__ import annotations

import logging
import math

from sqlalchemy.ext.asyncio import AsyncSession

from src.db.click_tables import ClickLogRow
from src.db.repository import ClickLogRepository
from src.errors import ValidationError
from src.models.click_log import ClickLog, ConversionData, CorrelationMethod, utcnow
from src.services.link_tracking import generate_click_id, build_tracked_url

logger = logging.getLogger(__name__)

MANUAL_ORIGINAL_URL = "manual_sale"


def _validate(customer_ref: str, product_name: str, total_amount) -> tuple[str, str, float]:
    customer_ref = (customer_ref or "").strip()
    product_name = (product_name or "").strip()
    if not customer_ref:
        raise ValidationError("customerRef is required")
    if not product_name:
        raise ValidationError("productName is required")
    if isinstance(total_amount, bool):
        raise ValidationError("totalAmount must be a number")
    try:
        amount = float(total_amount)
    except (TypeError, ValueError):
        raise ValidationError("totalAmount must be a number")
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError("totalAmount must be greater than 0")
    return customer_ref, product_name, amount


async def register_manual_sale(
    session: AsyncSession,
    customer_ref: str,
    product_name: str,
    total_amount: float,
    notes: str | None = None,
) -> ClickLog:
    """Create a ClickLog born converted (method=manual, confidence=high)."""
    customer_ref, product_name, amount = _validate(customer_ref, product_name, total_amount)

    now = utcnow()
    click_id = generate_click_id()
    conversion = ConversionData(
        order_id=f"manual-{click_id}",
        total_amount=amount,
        item_title=product_name,
        order_date=now,
        manual_notes=(notes or "").strip() or None,
    )
    row = ClickLogRow(
        id=click_id,
        customer_ref=customer_ref,
        product_ref=product_name,
        original_url=MANUAL_ORIGINAL_URL,
        tracked_url=build_tracked_url(click_id),
        created_at=now,
        is_orphan=False,
    )
    click_log = await ClickLogRepository(session).insert_converted(
        row, conversion, CorrelationMethod.MANUAL, converted_at=now,
    )
    await session.commit()

    logger.info(
        "Manual sale registered: customer=%s product=%r amount=%.2f (%s)",
        customer_ref, product_name, amount, click_id,
    )
    return click_log
