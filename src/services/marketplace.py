"""Marketplace order feed — the correlation engine's view of recent sales.

``OrderSource`` is the port the engine depends on. ``MarketplaceClient`` is
the Mercado Libre style HTTP adapter:

  GET {base}/orders/search?seller={id}&sort=date_desc&limit={n}
  GET {base}/shipments/{shipping_id}   (receiver name + address, best effort)

Any failure fetching the order list is raised as ``ExternalServiceError`` so a
correlation run aborts before writing anything.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

import httpx

from config.settings import settings
from src.errors import ExternalServiceError
from src.models.click_log import MarketplaceOrder

logger = logging.getLogger(__name__)


class OrderSource(ABC):
    """Abstract feed of recent marketplace orders for a seller."""

    @abstractmethod
    async def fetch_recent(self, seller_id: str, limit: int) -> list[MarketplaceOrder]:
        """Return up to ``limit`` most recent orders, newest first."""
        ...


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _split_name(full_name: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """'Juan Pérez García' → ('Juan', 'Pérez García')."""
    parts = (full_name or "").split()
    if not parts:
        return None, None
    return parts[0], (" ".join(parts[1:]) or None)


def parse_order(raw: dict, shipment: dict | None = None) -> MarketplaceOrder:
    """Normalize a raw order (and optional shipment) payload."""
    buyer = raw.get("buyer") or {}
    items = raw.get("order_items") or []
    first_item = (items[0].get("item") or {}) if items else {}

    first_name, last_name = buyer.get("first_name"), buyer.get("last_name")
    city = state = None
    if shipment:
        receiver_first, receiver_last = _split_name(shipment.get("receiver_name"))
        first_name = receiver_first or first_name
        last_name = receiver_last or last_name
        address = shipment.get("receiver_address") or {}
        city = (address.get("city") or {}).get("name")
        state = (address.get("state") or {}).get("name")

    created_at = _parse_datetime(raw.get("date_created"))
    if created_at is None:
        raise ValueError(f"Order {raw.get('id')} has no date_created")

    return MarketplaceOrder(
        order_id=str(raw["id"]),
        created_at=created_at,
        total_amount=float(raw.get("total_amount") or 0.0),
        item_id=first_item.get("id"),
        item_title=first_item.get("title"),
        buyer_first_name=first_name,
        buyer_last_name=last_name,
        buyer_nickname=buyer.get("nickname"),
        shipping_city=city,
        shipping_state=state,
        status=raw.get("status"),
        currency=raw.get("currency_id"),
    )


class MarketplaceClient(OrderSource):
    """HTTP adapter for the marketplace orders API."""

    def __init__(
        self,
        access_token: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.access_token = (access_token if access_token is not None else settings.MARKETPLACE_ACCESS_TOKEN).strip()
        self.api_base = (api_base or settings.MARKETPLACE_API_BASE).rstrip("/")
        self.timeout = timeout or settings.MARKETPLACE_TIMEOUT_SECONDS
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            timeout=self.timeout,
            transport=self._transport,
            follow_redirects=False,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Accept": "application/json",
            },
        )

    async def fetch_recent(self, seller_id: str, limit: int) -> list[MarketplaceOrder]:
        if not seller_id:
            raise ExternalServiceError("sellerId is required to fetch marketplace orders")
        if not self.access_token:
            raise ExternalServiceError("Marketplace access token is not configured")

        async with self._client() as client:
            try:
                resp = await client.get(
                    "/orders/search",
                    params={"seller": seller_id, "sort": "date_desc", "limit": limit, "offset": 0},
                )
            except httpx.HTTPError as exc:
                logger.exception("Marketplace order fetch failed for seller %s", seller_id)
                raise ExternalServiceError(f"Marketplace request failed: {exc}") from exc

            if resp.status_code >= 300:
                logger.error(
                    "Marketplace returned %s for seller %s: %s",
                    resp.status_code, seller_id, resp.text[:200],
                )
                raise ExternalServiceError(f"Marketplace API returned {resp.status_code}")
            if "json" not in resp.headers.get("content-type", ""):
                raise ExternalServiceError("Marketplace API returned a non-JSON response")

            try:
                results = resp.json().get("results") or []
            except ValueError as exc:
                raise ExternalServiceError("Marketplace API returned malformed JSON") from exc

            orders: list[MarketplaceOrder] = []
            for raw in results[:limit]:
                shipment = await self._fetch_shipment(client, (raw.get("shipping") or {}).get("id"))
                try:
                    orders.append(parse_order(raw, shipment))
                except (KeyError, TypeError, ValueError) as exc:
                    raise ExternalServiceError(f"Malformed order payload: {exc}") from exc

        logger.info("Fetched %d orders for seller %s", len(orders), seller_id)
        return orders

    async def _fetch_shipment(self, client: httpx.AsyncClient, shipping_id) -> dict | None:
        """Best effort: a missing shipment only loses the city/name signals."""
        if not shipping_id:
            return None
        try:
            resp = await client.get(f"/shipments/{shipping_id}")
        except httpx.HTTPError as exc:
            logger.warning("Shipment %s lookup failed: %s", shipping_id, exc)
            return None
        if resp.status_code != 200:
            logger.warning("Shipment %s lookup returned %s", shipping_id, resp.status_code)
            return None
        try:
            return resp.json()
        except ValueError:
            logger.warning("Shipment %s returned malformed JSON", shipping_id)
            return None


class StaticOrderSource(OrderSource):
    """In-memory feed (imports from marketplace reports, tests)."""

    def __init__(self, orders: list[MarketplaceOrder] | None = None):
        self.orders = list(orders or [])

    async def fetch_recent(self, seller_id: str, limit: int) -> list[MarketplaceOrder]:
        ordered = sorted(self.orders, key=lambda o: o.created_at, reverse=True)
        return ordered[:limit]
