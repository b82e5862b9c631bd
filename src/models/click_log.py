"""ClickLog data models — core schema for the attribution ledger."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, computed_field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CorrelationMethod(str, Enum):
    """How a ClickLog came to be marked as converted."""
    MANUAL = "manual"
    ML_ITEM_MATCH = "ml_item_match"
    ENHANCED = "enhanced"
    TIME = "time"
    ORPHAN = "orphan"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


_CONFIDENCE_BY_METHOD = {
    CorrelationMethod.MANUAL: Confidence.HIGH,
    CorrelationMethod.ML_ITEM_MATCH: Confidence.HIGH,
    CorrelationMethod.ENHANCED: Confidence.MEDIUM,
    CorrelationMethod.TIME: Confidence.LOW,
    CorrelationMethod.ORPHAN: Confidence.LOW,
}


def confidence_for(method: CorrelationMethod | str) -> Confidence:
    """The one and only method → confidence derivation."""
    return _CONFIDENCE_BY_METHOD[CorrelationMethod(method)]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConversionData(_CamelModel):
    order_id: str
    total_amount: float
    item_id: Optional[str] = None
    item_title: Optional[str] = None
    buyer_first_name: Optional[str] = None
    buyer_last_name: Optional[str] = None
    buyer_nickname: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_state: Optional[str] = None
    order_date: Optional[datetime] = None
    manual_notes: Optional[str] = None  # manual sales only
    hours_to_order: Optional[float] = None  # link issued → order placed

    @property
    def region(self) -> Optional[str]:
        return self.shipping_state or self.shipping_city


class ClickLog(_CamelModel):
    """One issued tracked link and its eventual outcome."""
    id: str
    customer_ref: str
    product_ref: str
    item_id: Optional[str] = None
    original_url: str
    tracked_url: str
    campaign_ref: Optional[str] = None
    customer_name: Optional[str] = None
    customer_city: Optional[str] = None
    created_at: datetime
    clicked_at: Optional[datetime] = None
    converted: bool = False
    converted_at: Optional[datetime] = None
    conversion_data: Optional[ConversionData] = None
    correlation_method: Optional[CorrelationMethod] = None
    is_orphan: bool = False

    @computed_field(alias="correlationConfidence")
    @property
    def correlation_confidence(self) -> Optional[Confidence]:
        if self.correlation_method is None:
            return None
        return confidence_for(self.correlation_method)

    @property
    def clicked(self) -> bool:
        return self.clicked_at is not None

    @property
    def revenue(self) -> float:
        return self.conversion_data.total_amount if self.conversion_data else 0.0

    def to_api(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


@dataclass
class MarketplaceOrder:
    """A marketplace order as seen by the correlation engine."""
    order_id: str
    created_at: datetime
    total_amount: float
    item_id: Optional[str] = None
    item_title: Optional[str] = None
    buyer_first_name: Optional[str] = None
    buyer_last_name: Optional[str] = None
    buyer_nickname: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_state: Optional[str] = None
    status: Optional[str] = None
    currency: Optional[str] = None

    def __post_init__(self):
        self.order_id = str(self.order_id)
        self.created_at = as_utc(self.created_at)


@dataclass
class Correlation:
    """One order → ClickLog attribution (proposed or persisted)."""
    order_id: str
    method: CorrelationMethod
    customer_ref: str
    total_amount: float
    click_log_id: Optional[str] = None  # None for orphan proposals in a dry run
    item_id: Optional[str] = None
    item_title: Optional[str] = None
    shipping_city: Optional[str] = None
    hours_to_order: Optional[float] = None

    @property
    def confidence(self) -> Confidence:
        return confidence_for(self.method)

    def to_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "clickLogId": self.click_log_id,
            "customerRef": self.customer_ref,
            "method": self.method.value,
            "confidence": self.confidence.value,
            "totalAmount": self.total_amount,
            "itemId": self.item_id,
            "itemTitle": self.item_title,
            "shippingCity": self.shipping_city,
            "hoursToOrder": None if self.hours_to_order is None else round(self.hours_to_order, 2),
        }


@dataclass
class CorrelationRun:
    """Summary of one correlation execution."""
    dry_run: bool
    orders_processed: int = 0
    already_attributed: int = 0
    unmatched: int = 0
    orphans_created: int = 0
    correlations: list[Correlation] = field(default_factory=list)

    @property
    def clicks_correlated(self) -> int:
        return sum(1 for c in self.correlations if c.method != CorrelationMethod.ORPHAN)

    @property
    def orders_with_clicks(self) -> int:
        return len({c.order_id for c in self.correlations if c.method != CorrelationMethod.ORPHAN})

    def to_dict(self) -> dict:
        return {
            "dryRun": self.dry_run,
            "ordersProcessed": self.orders_processed,
            "ordersWithClicks": self.orders_with_clicks,
            "clicksCorrelated": self.clicks_correlated,
            "orphansCreated": self.orphans_created,
            "alreadyAttributed": self.already_attributed,
            "unmatched": self.unmatched,
            "correlations": [c.to_dict() for c in self.correlations],
        }
