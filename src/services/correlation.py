"""
Click → Order Correlation Engine.

Matches recent marketplace orders to the tracked links the bot issued,
after the fact, and writes each attribution to the click ledger once.

Tiers, tried in strict priority for every order (first hit wins):
1. ml_item_match (high)   — order item id == ClickLog item id
2. enhanced      (medium) — product text ~ order item title and/or same city
3. time          (low)    — buyer identified as a customer with exactly one
                            open ClickLog in the window
4. orphan        (low)    — no ClickLog fits, but the buyer is strongly
                            identified as a known customer; a converted
                            ClickLog shell is created for the sale

Only ClickLogs that are unconverted, created at or before the order and no
more than ``time_window_hours`` before it are eligible. Within a tier the
latest eligible ClickLog wins. A ClickLog claimed by one order of a run is
not offered to the next one; orders are processed oldest first.

Dry runs compute the same proposals without touching the ledger or the lease.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.db.click_tables import ClickLogRow
from src.db.repository import ClickLogRepository
from src.errors import Conflict
from src.models.click_log import (
    ClickLog,
    ConversionData,
    Correlation,
    CorrelationMethod,
    CorrelationRun,
    MarketplaceOrder,
    utcnow,
)
from src.services.lease import held_lease
from src.services.link_tracking import build_tracked_url, generate_click_id
from src.services.marketplace import OrderSource
from src.services.similarity import TextSimilarity, get_similarity, normalize_city, normalize_text

logger = logging.getLogger(__name__)

WINDOW_HOURS_BOUNDS = (1, 168)
ORDER_LIMIT_BOUNDS = (10, 50)

# Buyer identity weights (name / nickname / city agreement)
NAME_MATCH_SCORE = 40
NICKNAME_MATCH_SCORE = 35
CITY_MATCH_SCORE = 35
MIN_NICKNAME_NAME_LENGTH = 3

ORPHAN_ORIGINAL_URL = "orphan_correlation"


class EnhancedMatchMode(str, Enum):
    """How text agreement and city agreement combine in the enhanced tier."""
    TEXT_OR_CITY = "text_or_city"
    TEXT_AND_CITY = "text_and_city"
    TEXT_ONLY = "text_only"


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


def clamp_window_hours(value: int | None) -> int:
    if value is None:
        value = settings.CORRELATION_WINDOW_HOURS
    return clamp(value, *WINDOW_HOURS_BOUNDS)


def clamp_order_limit(value: int | None) -> int:
    if value is None:
        value = settings.CORRELATION_ORDER_LIMIT
    return clamp(value, *ORDER_LIMIT_BOUNDS)


@dataclass
class Match:
    """A proposed attribution for one order."""
    order: MarketplaceOrder
    method: CorrelationMethod
    customer_ref: str
    click_log: Optional[ClickLog] = None  # None for orphan

    @property
    def hours_to_order(self) -> Optional[float]:
        if self.click_log is None:
            return None
        return (self.order.created_at - self.click_log.created_at).total_seconds() / 3600

    def conversion_data(self) -> ConversionData:
        order = self.order
        return ConversionData(
            order_id=order.order_id,
            total_amount=order.total_amount,
            item_id=order.item_id,
            item_title=order.item_title,
            buyer_first_name=order.buyer_first_name,
            buyer_last_name=order.buyer_last_name,
            buyer_nickname=order.buyer_nickname,
            shipping_city=order.shipping_city,
            shipping_state=order.shipping_state,
            order_date=order.created_at,
            hours_to_order=self.hours_to_order,
        )

    def to_correlation(self, click_log_id: Optional[str] = None) -> Correlation:
        return Correlation(
            order_id=self.order.order_id,
            method=self.method,
            customer_ref=self.customer_ref,
            total_amount=self.order.total_amount,
            click_log_id=click_log_id or (self.click_log.id if self.click_log else None),
            item_id=self.order.item_id,
            item_title=self.order.item_title,
            shipping_city=self.order.shipping_city,
            hours_to_order=self.hours_to_order,
        )


def identity_scores(order: MarketplaceOrder, profiles: Iterable[ClickLog]) -> dict[str, tuple[int, bool]]:
    """Score how strongly the order's buyer looks like each known customer.

    Returns customer_ref → (best score, name matched). A customer only counts
    as identified when the name signal matched; city alone never identifies.
    """
    buyer_first = normalize_text(order.buyer_first_name).split(" ")[0]
    nickname = normalize_text(order.buyer_nickname).replace(" ", "")
    city = normalize_city(order.shipping_city)

    scores: dict[str, tuple[int, bool]] = {}
    for log in profiles:
        name = normalize_text(log.customer_name).split(" ")[0]
        if not name:
            continue
        score = 0
        name_hit = False
        if buyer_first and name == buyer_first:
            score += NAME_MATCH_SCORE
            name_hit = True
        elif nickname and len(name) >= MIN_NICKNAME_NAME_LENGTH and name in nickname:
            score += NICKNAME_MATCH_SCORE
            name_hit = True
        if city and normalize_city(log.customer_city) == city:
            score += CITY_MATCH_SCORE
        best = scores.get(log.customer_ref)
        if best is None or (name_hit, score) > (best[1], best[0]):
            scores[log.customer_ref] = (score, name_hit)
    return scores


def _unique_top_customer(scores: dict[str, tuple[int, bool]]) -> Optional[tuple[str, int]]:
    """The single best name-identified customer, or None when absent/ambiguous."""
    identified = [(ref, score) for ref, (score, name_hit) in scores.items() if name_hit]
    if not identified:
        return None
    identified.sort(key=lambda pair: (-pair[1], pair[0]))
    if len(identified) > 1 and identified[0][1] == identified[1][1]:
        return None
    return identified[0]


class CorrelationEngine:
    """Runs one correlation execution against a click ledger session."""

    def __init__(
        self,
        session: AsyncSession,
        order_source: OrderSource,
        similarity: TextSimilarity | None = None,
        match_mode: EnhancedMatchMode | str | None = None,
        similarity_threshold: float | None = None,
        orphan_min_score: int | None = None,
        orphan_lookback_days: int | None = None,
        lease_ttl_seconds: int | None = None,
    ):
        self.session = session
        self.repo = ClickLogRepository(session)
        self.order_source = order_source
        self.similarity = similarity or get_similarity(settings.ENHANCED_SIMILARITY_BACKEND)
        self.match_mode = EnhancedMatchMode(match_mode or settings.ENHANCED_MATCH_MODE)
        self.similarity_threshold = (
            settings.ENHANCED_SIMILARITY_THRESHOLD if similarity_threshold is None else similarity_threshold
        )
        self.orphan_min_score = settings.ORPHAN_MIN_SCORE if orphan_min_score is None else orphan_min_score
        self.orphan_lookback = timedelta(
            days=settings.ORPHAN_LOOKBACK_DAYS if orphan_lookback_days is None else orphan_lookback_days
        )
        self.lease_ttl_seconds = lease_ttl_seconds

    # ── Entry point ──────────────────────────────────────────────────────────

    async def run(
        self,
        seller_id: str,
        time_window_hours: int | None = None,
        order_limit: int | None = None,
        dry_run: bool = False,
    ) -> CorrelationRun:
        window_hours = clamp_window_hours(time_window_hours)
        limit = clamp_order_limit(order_limit)
        logger.info(
            "Correlation run starting: seller=%s window=%sh limit=%s dry_run=%s",
            seller_id, window_hours, limit, dry_run,
        )

        if dry_run:
            run = await self._execute(seller_id, window_hours, limit, dry_run=True)
        else:
            async with held_lease(self.session, ttl_seconds=self.lease_ttl_seconds):
                run = await self._execute(seller_id, window_hours, limit, dry_run=False)

        logger.info(
            "Correlation run finished: processed=%d correlated=%d orphans=%d already=%d unmatched=%d dry_run=%s",
            run.orders_processed, run.clicks_correlated, run.orphans_created,
            run.already_attributed, run.unmatched, dry_run,
        )
        return run

    async def _execute(self, seller_id: str, window_hours: int, limit: int, dry_run: bool) -> CorrelationRun:
        window = timedelta(hours=window_hours)
        orders = await self.order_source.fetch_recent(seller_id, limit)
        orders = sorted(orders, key=lambda o: o.created_at, reverse=True)[:limit]

        run = CorrelationRun(dry_run=dry_run, orders_processed=len(orders))
        if not orders:
            return run

        unique: dict[str, MarketplaceOrder] = {}
        for order in orders:
            unique.setdefault(order.order_id, order)
        attributed = await self.repo.attributed_order_ids(list(unique))
        pending = [o for o in unique.values() if o.order_id not in attributed]
        run.already_attributed = len(orders) - len(pending)
        if not pending:
            return run

        oldest = min(o.created_at for o in pending)
        newest = max(o.created_at for o in pending)
        candidates = await self.repo.unconverted_between(oldest - window, newest)
        profiles = await self.repo.known_customers_between(oldest - self.orphan_lookback, newest)

        proposals: list[Match] = []
        claimed: set[str] = set()
        for order in sorted(pending, key=lambda o: (o.created_at, o.order_id)):
            match = self.match_order(order, candidates, window, profiles, claimed)
            if match is None:
                run.unmatched += 1
                logger.debug("No match for order %s", order.order_id)
                continue
            if match.click_log is not None:
                claimed.add(match.click_log.id)
            proposals.append(match)

        if dry_run:
            run.correlations = [m.to_correlation() for m in proposals]
            run.orphans_created = sum(1 for m in proposals if m.method == CorrelationMethod.ORPHAN)
            return run

        for match in proposals:
            try:
                correlation = await self._persist(match)
                await self.session.commit()
            except Conflict as exc:
                await self.session.rollback()
                logger.warning("Order %s skipped: %s", match.order.order_id, exc.message)
                run.already_attributed += 1
                continue
            run.correlations.append(correlation)
            if match.method == CorrelationMethod.ORPHAN:
                run.orphans_created += 1
            logger.info(
                "Attributed order %s → %s (%s, %s)",
                correlation.order_id, correlation.click_log_id,
                correlation.method.value, correlation.confidence.value,
            )
        return run

    # ── Matching (pure) ──────────────────────────────────────────────────────

    def match_order(
        self,
        order: MarketplaceOrder,
        candidates: list[ClickLog],
        window: timedelta,
        profiles: Iterable[ClickLog] = (),
        claimed: set[str] | frozenset = frozenset(),
    ) -> Optional[Match]:
        """Pick the attribution for one order, or None if nothing applies."""
        eligible = sorted(
            (
                c for c in candidates
                if c.id not in claimed
                and not c.converted
                and c.created_at <= order.created_at
                and order.created_at - c.created_at <= window
            ),
            key=lambda c: (c.created_at, c.id),
            reverse=True,
        )

        hit = self._match_item(order, eligible)
        if hit:
            return Match(order, CorrelationMethod.ML_ITEM_MATCH, hit.customer_ref, hit)

        hit = self._match_enhanced(order, eligible)
        if hit:
            return Match(order, CorrelationMethod.ENHANCED, hit.customer_ref, hit)

        # Only customers already in contact before the order can be its buyer
        known = [p for p in profiles if p.created_at <= order.created_at]
        scores = identity_scores(order, known + eligible)
        top = _unique_top_customer(scores)

        if top is not None:
            customer_ref, score = top
            own = [c for c in eligible if c.customer_ref == customer_ref]
            if len(own) == 1:
                return Match(order, CorrelationMethod.TIME, customer_ref, own[0])
            if not own and score >= self.orphan_min_score:
                return Match(order, CorrelationMethod.ORPHAN, customer_ref, None)
        return None

    def _match_item(self, order: MarketplaceOrder, eligible: list[ClickLog]) -> Optional[ClickLog]:
        item_id = (order.item_id or "").strip().upper()
        if not item_id:
            return None
        for click_log in eligible:
            if click_log.item_id and click_log.item_id.upper() == item_id:
                return click_log
        return None

    def _match_enhanced(self, order: MarketplaceOrder, eligible: list[ClickLog]) -> Optional[ClickLog]:
        order_city = normalize_city(order.shipping_city)
        for click_log in eligible:
            text_hit = self.similarity.matches(click_log.product_ref, order.item_title or "", self.similarity_threshold)
            city_hit = bool(order_city) and normalize_city(click_log.customer_city) == order_city
            if self.match_mode == EnhancedMatchMode.TEXT_ONLY:
                ok = text_hit
            elif self.match_mode == EnhancedMatchMode.TEXT_AND_CITY:
                ok = text_hit and city_hit
            else:
                ok = text_hit or city_hit
            if ok:
                return click_log
        return None

    # ── Writes ───────────────────────────────────────────────────────────────

    async def _persist(self, match: Match) -> Correlation:
        now = utcnow()
        conversion = match.conversion_data()
        if match.click_log is not None:
            await self.repo.attribute(match.click_log.id, conversion, match.method, converted_at=now)
            return match.to_correlation()

        order = match.order
        click_id = generate_click_id()
        row = ClickLogRow(
            id=click_id,
            customer_ref=match.customer_ref,
            product_ref=order.item_title or "Unknown",
            item_id=order.item_id,
            original_url=ORPHAN_ORIGINAL_URL,
            tracked_url=build_tracked_url(click_id),
            created_at=order.created_at,
            is_orphan=True,
        )
        shell = await self.repo.insert_converted(row, conversion, CorrelationMethod.ORPHAN, converted_at=now)
        return match.to_correlation(click_log_id=shell.id)


async def correlate_conversions(
    session: AsyncSession,
    order_source: OrderSource,
    seller_id: str,
    time_window_hours: int | None = None,
    order_limit: int | None = None,
    dry_run: bool = False,
) -> CorrelationRun:
    """Convenience wrapper: one engine, one run."""
    engine = CorrelationEngine(session, order_source)
    return await engine.run(seller_id, time_window_hours, order_limit, dry_run)
