"""Attribution analytics — correlation runs and conversion dashboards."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.db.engine import get_session
from src.errors import ValidationError
from src.services import conversion_stats as stats
from src.services.correlation import CorrelationEngine
from src.services.marketplace import MarketplaceClient, OrderSource

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analytics", tags=["analytics"])


def get_order_source() -> OrderSource:
    """Marketplace feed used by on-demand correlation runs."""
    return MarketplaceClient()


class CorrelateRequest(BaseModel):
    """Out-of-range numbers are clamped by the engine, never rejected."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    seller_id: Optional[str] = None
    time_window_hours: Optional[int] = None
    order_limit: Optional[int] = None
    dry_run: bool = False


@router.post("/correlate-conversions")
async def correlate(
    req: Optional[CorrelateRequest] = None,
    session: AsyncSession = Depends(get_session),
    order_source: OrderSource = Depends(get_order_source),
):
    req = req or CorrelateRequest()
    seller_id = (req.seller_id or settings.MARKETPLACE_SELLER_ID or "").strip()
    if not seller_id:
        raise ValidationError("sellerId is required (or set MARKETPLACE_SELLER_ID)")

    engine = CorrelationEngine(session, order_source)
    run = await engine.run(
        seller_id,
        time_window_hours=req.time_window_hours,
        order_limit=req.order_limit,
        dry_run=req.dry_run,
    )
    return run.to_dict()


@router.get("/conversions")
async def conversions(
    date_from: Optional[str] = Query(None, alias="dateFrom"),
    date_to: Optional[str] = Query(None, alias="dateTo"),
    exclude_orphans: bool = Query(False, alias="excludeOrphans"),
    session: AsyncSession = Depends(get_session),
):
    return {"stats": await stats.conversion_stats(session, date_from, date_to, exclude_orphans=exclude_orphans)}


@router.get("/conversions/recent")
async def recent_conversions(
    limit: int = Query(20, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
):
    logs = await stats.recent_conversions(session, limit)
    return {"conversions": [log.to_api() for log in logs]}


@router.get("/top-products")
async def top_products(
    date_from: Optional[str] = Query(None, alias="dateFrom"),
    date_to: Optional[str] = Query(None, alias="dateTo"),
    limit: int = Query(10, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
):
    return {"products": await stats.top_products(session, date_from, date_to, limit)}


@router.get("/top-region")
async def top_region(
    date_from: Optional[str] = Query(None, alias="dateFrom"),
    date_to: Optional[str] = Query(None, alias="dateTo"),
    limit: int = Query(10, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
):
    return {"regions": await stats.top_regions(session, date_from, date_to, limit)}
