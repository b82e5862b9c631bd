"""Conversation-side actions — sales closed by a human agent in chat."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.engine import get_session
from src.services.manual_sales import register_manual_sale

router = APIRouter(prefix="/conversations", tags=["conversations"])


class RegisterSaleRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    product_name: str
    total_amount: float
    notes: Optional[str] = None


@router.post("/{customer_ref}/register-sale", status_code=201)
async def register_sale(
    customer_ref: str,
    req: RegisterSaleRequest,
    session: AsyncSession = Depends(get_session),
):
    """Record a sale closed in conversation as a converted ClickLog."""
    click_log = await register_manual_sale(
        session,
        customer_ref=customer_ref,
        product_name=req.product_name,
        total_amount=req.total_amount,
        notes=req.notes,
    )
    return {"clickLog": click_log.to_api()}
