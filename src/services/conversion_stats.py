"""
Conversion statistics — what the dashboards read.

Pure aggregation functions over a list of ClickLogs, plus async wrappers that
load the relevant slice of the ledger for a date range. Date ranges are whole
UTC days: ``date_from`` 00:00:00 through ``date_to`` 23:59:59.999999, and
default to the last 30 days.
"""
from __future__ import annotations

from collections import Counter, defaultdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.db.repository import ClickLogRepository
from src.errors import ValidationError
from src.models.click_log import ClickLog, Confidence, CorrelationMethod, as_utc, utcnow

DEFAULT_RANGE_DAYS = 30
UNKNOWN_REGION = "unknown"


# ── Date ranges ──────────────────────────────────────────────────────────────

def _parse_day(value: date | datetime | str | None, field: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value).date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError as exc:
        raise ValidationError(f"{field} must be a YYYY-MM-DD date, got {value!r}") from exc


def resolve_range(
    date_from: date | datetime | str | None = None,
    date_to: date | datetime | str | None = None,
) -> tuple[datetime, datetime]:
    """Turn optional day bounds into an inclusive UTC datetime range."""
    end_day = _parse_day(date_to, "dateTo") or utcnow().date()
    start_day = _parse_day(date_from, "dateFrom") or end_day - timedelta(days=DEFAULT_RANGE_DAYS - 1)
    if start_day > end_day:
        raise ValidationError("dateFrom must not be after dateTo")
    start = datetime.combine(start_day, time.min, tzinfo=timezone.utc)
    end = datetime.combine(end_day, time.max, tzinfo=timezone.utc)
    return start, end


# ── Pure aggregations ────────────────────────────────────────────────────────

def _rate(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round(min(1.0, numerator / denominator), 4)


def compute_conversion_stats(
    logs: Iterable[ClickLog],
    exclude_orphans: bool = False,
    top_n: int = 5,
) -> dict:
    """Headline numbers for a set of ClickLogs.

    ``exclude_orphans`` only changes the rates; orphan shells still count
    toward conversions and revenue.
    """
    logs = list(logs)
    converted = [log for log in logs if log.converted]
    rated = [log for log in logs if not (exclude_orphans and log.is_orphan)]

    total_links = len(rated)
    clicked_links = sum(1 for log in rated if log.clicked)
    rated_conversions = sum(1 for log in rated if log.converted)

    confidence = {c.value: 0 for c in Confidence}
    methods = {m.value: 0 for m in CorrelationMethod}
    spend: dict[str, list] = defaultdict(lambda: [0, 0.0])
    for log in converted:
        if log.correlation_confidence is not None:
            confidence[log.correlation_confidence.value] += 1
        if log.correlation_method is not None:
            methods[log.correlation_method.value] += 1
        spend[log.customer_ref][0] += 1
        spend[log.customer_ref][1] += log.revenue

    top_converters = sorted(
        (
            {"customerRef": ref, "conversions": count, "totalSpent": round(total, 2)}
            for ref, (count, total) in spend.items()
        ),
        key=lambda row: (-row["totalSpent"], -row["conversions"], row["customerRef"]),
    )[:top_n]

    return {
        "totalLinks": total_links,
        "clickedLinks": clicked_links,
        "conversions": len(converted),
        "totalRevenue": round(sum(log.revenue for log in converted), 2),
        "clickRate": _rate(clicked_links, total_links),
        "conversionRate": _rate(rated_conversions, total_links),
        "confidenceBreakdown": confidence,
        "methodBreakdown": methods,
        "orphanConversions": sum(1 for log in converted if log.is_orphan),
        "topConverters": top_converters,
    }


def build_daily_series(logs: Iterable[ClickLog], start: datetime, end: datetime) -> list[dict]:
    """One zero-filled bucket per UTC day between ``start`` and ``end``."""
    links: Counter = Counter()
    clicks: Counter = Counter()
    conversions: Counter = Counter()
    for log in logs:
        links[log.created_at.date()] += 1
        if log.clicked_at is not None:
            clicks[as_utc(log.clicked_at).date()] += 1
        if log.converted and log.converted_at is not None:
            conversions[as_utc(log.converted_at).date()] += 1

    series = []
    day = as_utc(start).date()
    last = as_utc(end).date()
    while day <= last:
        series.append({
            "date": day.isoformat(),
            "dateLabel": day.strftime("%d %b"),
            "links": links[day],
            "clicks": clicks[day],
            "conversions": conversions[day],
        })
        day += timedelta(days=1)
    return series


def _rank(groups: dict[str, list], limit: int) -> list[dict]:
    rows = [
        {"name": name, "conversions": count, "revenue": round(revenue, 2)}
        for name, (count, revenue) in groups.items()
    ]
    rows.sort(key=lambda row: (-row["revenue"], -row["conversions"], row["name"]))
    return rows[:limit]


def rank_products(logs: Iterable[ClickLog], limit: int = 10) -> list[dict]:
    groups: dict[str, list] = defaultdict(lambda: [0, 0.0])
    for log in logs:
        if not log.converted:
            continue
        groups[log.product_ref][0] += 1
        groups[log.product_ref][1] += log.revenue
    return _rank(groups, limit)


def rank_regions(logs: Iterable[ClickLog], limit: int = 10) -> list[dict]:
    groups: dict[str, list] = defaultdict(lambda: [0, 0.0])
    for log in logs:
        if not log.converted:
            continue
        region = (log.conversion_data.region if log.conversion_data else None) or UNKNOWN_REGION
        groups[region][0] += 1
        groups[region][1] += log.revenue
    return _rank(groups, limit)


# ── Ledger-backed wrappers ───────────────────────────────────────────────────

async def conversion_stats(
    session: AsyncSession,
    date_from=None,
    date_to=None,
    exclude_orphans: bool = False,
    top_n: int = 5,
) -> dict:
    start, end = resolve_range(date_from, date_to)
    logs = await ClickLogRepository(session).created_between(start, end)
    return compute_conversion_stats(logs, exclude_orphans=exclude_orphans, top_n=top_n)


async def daily_series(session: AsyncSession, date_from=None, date_to=None) -> list[dict]:
    start, end = resolve_range(date_from, date_to)
    logs = await ClickLogRepository(session).active_between(start, end)
    # Events outside the range fall on days the series does not emit.
    return build_daily_series(logs, start, end)


async def top_products(session: AsyncSession, date_from=None, date_to=None, limit: int = 10) -> list[dict]:
    start, end = resolve_range(date_from, date_to)
    logs = await ClickLogRepository(session).created_between(start, end)
    return rank_products(logs, limit)


async def top_regions(session: AsyncSession, date_from=None, date_to=None, limit: int = 10) -> list[dict]:
    start, end = resolve_range(date_from, date_to)
    logs = await ClickLogRepository(session).created_between(start, end)
    return rank_regions(logs, limit)


async def recent_conversions(session: AsyncSession, limit: int = 20) -> list[ClickLog]:
    return await ClickLogRepository(session).recent_conversions(limit)
