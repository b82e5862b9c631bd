"""Click ledger API — issue tracked links, follow them, browse the ledger."""
from __future__ import annotations

import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.db.engine import get_session
from src.db.repository import ClickLogRepository
from src.errors import NotFound
from src.services.conversion_stats import daily_series, resolve_range
from src.services.link_tracking import issue_link, record_click

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/click-logs", tags=["click-logs"])
redirect_router = APIRouter(tags=["redirect"])


class GenerateLinkRequest(BaseModel):
    """Issue a tracked link for one customer/product pair."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    customer_ref: str
    product_ref: str
    original_url: str
    item_id: Optional[str] = None
    campaign_ref: Optional[str] = None
    customer_name: Optional[str] = None
    customer_city: Optional[str] = None


@router.post("/generate", status_code=201)
async def generate_link(req: GenerateLinkRequest, session: AsyncSession = Depends(get_session)):
    click_log = await issue_link(
        session,
        customer_ref=req.customer_ref,
        product_ref=req.product_ref,
        original_url=req.original_url,
        item_id=req.item_id,
        campaign_ref=req.campaign_ref,
        customer_name=req.customer_name,
        customer_city=req.customer_city,
    )
    return {"clickLog": click_log.to_api()}


@router.get("")
async def list_click_logs(
    customer_ref: Optional[str] = Query(None, alias="customerRef"),
    clicked: Optional[bool] = None,
    converted: Optional[bool] = None,
    campaign_ref: Optional[str] = Query(None, alias="campaignRef"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
):
    """Filtered, paginated ledger listing (newest first)."""
    start = end = None
    if start_date or end_date:
        start, end = resolve_range(start_date or end_date, end_date or start_date)

    logs, total = await ClickLogRepository(session).search(
        customer_ref=customer_ref,
        clicked=clicked,
        converted=converted,
        campaign_ref=campaign_ref,
        start=start,
        end=end,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return {
        "clickLogs": [log.to_api() for log in logs],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


@router.get("/daily")
async def daily_chart(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    session: AsyncSession = Depends(get_session),
):
    return {"chartData": await daily_series(session, start_date, end_date)}


@redirect_router.get("/r/{token}")
async def follow_tracked_link(token: str, request: Request, session: AsyncSession = Depends(get_session)):
    """Record the first click and 302 to the product page.

    Unknown or tampered tokens still redirect, to the fallback landing page.
    """
    try:
        target = await record_click(
            session,
            token,
            user_agent=request.headers.get("user-agent"),
            ip_address=request.client.host if request.client else None,
            referrer=request.headers.get("referer"),
        )
    except NotFound:
        logger.info("Unknown tracked link token %r — redirecting to fallback", token)
        target = settings.FALLBACK_LANDING_URL
    return RedirectResponse(url=target, status_code=302)
