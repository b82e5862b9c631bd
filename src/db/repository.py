"""ClickLog repository — ledger reads/writes + Pydantic conversion."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.click_tables import ClickLogRow
from src.errors import Conflict
from src.models.click_log import (
    ClickLog,
    ConversionData,
    CorrelationMethod,
    as_utc,
    confidence_for,
)


def _row_to_click_log(row: ClickLogRow) -> ClickLog:
    """Convert a DB row to a Pydantic ClickLog."""
    conversion = None
    if row.converted and row.conversion_data:
        conversion = ConversionData.model_validate(row.conversion_data)

    return ClickLog(
        id=row.id,
        customer_ref=row.customer_ref,
        product_ref=row.product_ref,
        item_id=row.item_id,
        original_url=row.original_url,
        tracked_url=row.tracked_url,
        campaign_ref=row.campaign_ref,
        customer_name=row.customer_name,
        customer_city=row.customer_city,
        created_at=as_utc(row.created_at),
        clicked_at=as_utc(row.clicked_at),
        converted=bool(row.converted),
        converted_at=as_utc(row.converted_at),
        conversion_data=conversion,
        correlation_method=row.correlation_method,
        is_orphan=bool(row.is_orphan),
    )


def _conversion_values(
    conversion: ConversionData,
    method: CorrelationMethod,
    converted_at: datetime,
) -> dict:
    """Column values that flip a ClickLog to converted — always written together."""
    return {
        "converted": True,
        "converted_at": as_utc(converted_at),
        "order_id": conversion.order_id,
        "revenue": conversion.total_amount,
        "conversion_data": conversion.model_dump(by_alias=True, mode="json"),
        "correlation_method": method.value,
        "correlation_confidence": confidence_for(method).value,
    }


class ClickLogRepository:
    """Async click ledger backed by SQLAlchemy.

    Conflicting writes (an order id already attributed) roll back the
    session's pending work and raise ``Conflict``; callers commit after
    each successful attribution.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Writes ───────────────────────────────────────────────────────────────

    async def insert(self, row: ClickLogRow) -> ClickLog:
        self.session.add(row)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            raise Conflict(
                f"Order {row.order_id} is already attributed", order_id=row.order_id,
            ) from exc
        return _row_to_click_log(row)

    async def insert_converted(
        self,
        row: ClickLogRow,
        conversion: ConversionData,
        method: CorrelationMethod,
        converted_at: datetime,
    ) -> ClickLog:
        """Insert a ClickLog that is born converted (manual sale, orphan shell)."""
        for key, value in _conversion_values(conversion, method, converted_at).items():
            setattr(row, key, value)
        return await self.insert(row)

    async def mark_clicked(
        self,
        click_id: str,
        clicked_at: datetime,
        user_agent: str | None = None,
        ip_address: str | None = None,
        referrer: str | None = None,
    ) -> bool:
        """Compare-and-set the first click. Returns False if already clicked."""
        stmt = (
            update(ClickLogRow)
            .execution_options(synchronize_session=False)
            .where(ClickLogRow.id == click_id, ClickLogRow.clicked_at.is_(None))
            .values(
                clicked_at=as_utc(clicked_at),
                user_agent=(user_agent or "")[:500] or None,
                ip_address=ip_address,
                referrer=(referrer or "")[:1000] or None,
            )
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def attribute(
        self,
        click_id: str,
        conversion: ConversionData,
        method: CorrelationMethod,
        converted_at: datetime,
    ) -> None:
        """Mark an unconverted ClickLog as converted by ``conversion``.

        Raises ``Conflict`` if the order id is taken or the ClickLog was
        converted in the meantime.
        """
        stmt = (
            update(ClickLogRow)
            .execution_options(synchronize_session=False)
            .where(ClickLogRow.id == click_id, ClickLogRow.converted == False)  # noqa: E712
            .values(**_conversion_values(conversion, method, converted_at))
        )
        try:
            result = await self.session.execute(stmt)
        except IntegrityError as exc:
            await self.session.rollback()
            raise Conflict(
                f"Order {conversion.order_id} is already attributed", order_id=conversion.order_id,
            ) from exc
        if result.rowcount != 1:
            raise Conflict(f"ClickLog {click_id} is already converted", order_id=conversion.order_id)

    # ── Reads ────────────────────────────────────────────────────────────────

    async def get(self, click_id: str) -> Optional[ClickLog]:
        row = await self.session.get(ClickLogRow, click_id, populate_existing=True)
        return _row_to_click_log(row) if row else None

    async def attributed_order_ids(self, order_ids: list[str]) -> set[str]:
        if not order_ids:
            return set()
        result = await self.session.execute(
            select(ClickLogRow.order_id).where(ClickLogRow.order_id.in_(order_ids))
        )
        return set(result.scalars().all())

    async def unconverted_between(self, since: datetime, until: datetime) -> list[ClickLog]:
        """Unconverted ClickLogs created in [since, until], newest first."""
        stmt = (
            select(ClickLogRow)
            .execution_options(populate_existing=True)
            .where(
                ClickLogRow.converted == False,  # noqa: E712
                ClickLogRow.created_at >= as_utc(since),
                ClickLogRow.created_at <= as_utc(until),
            )
            .order_by(ClickLogRow.created_at.desc(), ClickLogRow.id)
        )
        result = await self.session.execute(stmt)
        return [_row_to_click_log(r) for r in result.scalars().all()]

    async def known_customers_between(self, since: datetime, until: datetime) -> list[ClickLog]:
        """ClickLogs carrying a customer name snapshot, for buyer identification."""
        stmt = (
            select(ClickLogRow)
            .execution_options(populate_existing=True)
            .where(
                ClickLogRow.customer_name.is_not(None),
                ClickLogRow.is_orphan == False,  # noqa: E712
                ClickLogRow.created_at >= as_utc(since),
                ClickLogRow.created_at <= as_utc(until),
            )
            .order_by(ClickLogRow.created_at.desc(), ClickLogRow.id)
        )
        result = await self.session.execute(stmt)
        return [_row_to_click_log(r) for r in result.scalars().all()]

    async def created_between(self, start: datetime, end: datetime) -> list[ClickLog]:
        stmt = (
            select(ClickLogRow)
            .execution_options(populate_existing=True)
            .where(ClickLogRow.created_at >= as_utc(start), ClickLogRow.created_at <= as_utc(end))
            .order_by(ClickLogRow.created_at, ClickLogRow.id)
        )
        result = await self.session.execute(stmt)
        return [_row_to_click_log(r) for r in result.scalars().all()]

    async def active_between(self, start: datetime, end: datetime) -> list[ClickLog]:
        """ClickLogs created, clicked or converted in [start, end]."""
        start, end = as_utc(start), as_utc(end)
        stmt = (
            select(ClickLogRow)
            .execution_options(populate_existing=True)
            .where(or_(
                ClickLogRow.created_at.between(start, end),
                ClickLogRow.clicked_at.between(start, end),
                ClickLogRow.converted_at.between(start, end),
            ))
            .order_by(ClickLogRow.created_at, ClickLogRow.id)
        )
        result = await self.session.execute(stmt)
        return [_row_to_click_log(r) for r in result.scalars().all()]

    async def recent_conversions(self, limit: int = 20) -> list[ClickLog]:
        stmt = (
            select(ClickLogRow)
            .execution_options(populate_existing=True)
            .where(ClickLogRow.converted == True)  # noqa: E712
            .order_by(ClickLogRow.converted_at.desc(), ClickLogRow.id)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [_row_to_click_log(r) for r in result.scalars().all()]

    async def search(
        self,
        customer_ref: str | None = None,
        clicked: bool | None = None,
        converted: bool | None = None,
        campaign_ref: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ClickLog], int]:
        """Filtered, paginated listing, newest first. Returns (page, total)."""
        conditions = []
        if customer_ref:
            conditions.append(ClickLogRow.customer_ref == customer_ref)
        if clicked is not None:
            conditions.append(
                ClickLogRow.clicked_at.is_not(None) if clicked else ClickLogRow.clicked_at.is_(None)
            )
        if converted is not None:
            conditions.append(ClickLogRow.converted == converted)
        if campaign_ref:
            conditions.append(ClickLogRow.campaign_ref == campaign_ref)
        if start is not None:
            conditions.append(ClickLogRow.created_at >= as_utc(start))
        if end is not None:
            conditions.append(ClickLogRow.created_at <= as_utc(end))

        total = (await self.session.execute(
            select(func.count(ClickLogRow.id)).where(*conditions)
        )).scalar_one()

        stmt = (
            select(ClickLogRow)
            .execution_options(populate_existing=True)
            .where(*conditions)
            .order_by(ClickLogRow.created_at.desc(), ClickLogRow.id)
            .offset(offset)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [_row_to_click_log(r) for r in result.scalars().all()], total
