"""API tests — click ledger, manual sales, correlation and analytics endpoints."""
from __future__ import annotations

from datetime import timedelta

import pytest

from src.api.analytics import get_order_source
from src.api.main import app
from src.models.click_log import ConversionData, CorrelationMethod, MarketplaceOrder, utcnow
from src.services.lease import acquire_lease
from src.services.marketplace import StaticOrderSource

from conftest import TestSession


def use_orders(*orders):
    app.dependency_overrides[get_order_source] = lambda: StaticOrderSource(list(orders))


async def generate(client, **overrides):
    body = {
        "customerRef": "psid-1",
        "productRef": "Malla sombra 4x6",
        "originalUrl": "https://articulo.mercadolibre.com.mx/MLM-123-malla",
        "customerName": "Juan",
        **overrides,
    }
    resp = await client.post("/click-logs/generate", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()["clickLog"]


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert "version" in resp.json()


# ── Click ledger ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_generate_link(client):
    log = await generate(client)
    assert log["itemId"] == "MLM123"
    assert log["clickedAt"] is None
    assert log["converted"] is False
    assert log["correlationConfidence"] is None
    assert "/r/" in log["trackedUrl"]


@pytest.mark.asyncio
async def test_generate_link_rejects_relative_url(client):
    resp = await client.post("/click-logs/generate", json={
        "customerRef": "psid-1", "productRef": "Malla", "originalUrl": "/malla",
    })
    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_generate_link_missing_field_is_422(client):
    resp = await client.post("/click-logs/generate", json={"customerRef": "psid-1"})
    assert resp.status_code == 422
    assert resp.json()["error"] == "validation_error"
    assert isinstance(resp.json()["details"], list)


@pytest.mark.asyncio
async def test_redirect_records_first_click(client):
    log = await generate(client)
    path = "/r/" + log["trackedUrl"].rsplit("/r/", 1)[1]

    resp = await client.get(path, headers={"user-agent": "Messenger"})
    assert resp.status_code == 302
    assert resp.headers["location"] == "https://articulo.mercadolibre.com.mx/MLM-123-malla"

    listing = (await client.get("/click-logs", params={"clicked": "true"})).json()
    assert listing["pagination"]["total"] == 1
    first_click = listing["clickLogs"][0]["clickedAt"]
    assert first_click is not None

    await client.get(path)
    listing = (await client.get("/click-logs", params={"clicked": "true"})).json()
    assert listing["clickLogs"][0]["clickedAt"] == first_click


@pytest.mark.asyncio
async def test_redirect_unknown_token_falls_back(client):
    resp = await client.get("/r/000000000000-deadbeef")
    assert resp.status_code == 302
    assert resp.headers["location"] == "https://www.mercadolibre.com.mx"


@pytest.mark.asyncio
async def test_list_filters_and_pagination(client):
    for i in range(3):
        await generate(client, customerRef="a", campaignRef="oct25")
    await generate(client, customerRef="b")

    resp = await client.get("/click-logs", params={"customerRef": "a", "limit": 2, "page": 2})
    body = resp.json()
    assert body["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}
    assert len(body["clickLogs"]) == 1

    resp = await client.get("/click-logs", params={"campaignRef": "oct25", "converted": "false"})
    assert resp.json()["pagination"]["total"] == 3


@pytest.mark.asyncio
async def test_daily_chart(client):
    await generate(client)
    today = utcnow().date()
    resp = await client.get("/click-logs/daily", params={
        "startDate": (today - timedelta(days=6)).isoformat(), "endDate": today.isoformat(),
    })
    data = resp.json()["chartData"]
    assert len(data) == 7
    assert data[-1]["links"] == 1
    assert sum(d["links"] for d in data) == 1


@pytest.mark.asyncio
async def test_daily_chart_bad_date(client):
    resp = await client.get("/click-logs/daily", params={"startDate": "yesterday"})
    assert resp.status_code == 400


# ── Manual sales ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_register_sale(client):
    resp = await client.post("/conversations/X/register-sale", json={
        "productName": "Malla 4x6", "totalAmount": 450.50, "notes": "efectivo",
    })
    assert resp.status_code == 201
    log = resp.json()["clickLog"]
    assert log["customerRef"] == "X"
    assert log["converted"] is True
    assert log["correlationMethod"] == "manual"
    assert log["correlationConfidence"] == "high"
    assert log["conversionData"]["totalAmount"] == 450.50
    assert log["conversionData"]["manualNotes"] == "efectivo"


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -10])
async def test_register_sale_rejects_non_positive(client, amount):
    resp = await client.post("/conversations/X/register-sale", json={"productName": "Malla", "totalAmount": amount})
    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_error"
    listing = (await client.get("/click-logs")).json()
    assert listing["pagination"]["total"] == 0


# ── Correlation ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_correlate_end_to_end(client):
    log = await generate(client)
    use_orders(MarketplaceOrder(
        order_id="2000001", created_at=utcnow() + timedelta(minutes=5), total_amount=899.0, item_id="MLM123",
    ))

    resp = await client.post("/analytics/correlate-conversions", json={"sellerId": "seller-1"})
    assert resp.status_code == 200, resp.text
    run = resp.json()
    assert run["dryRun"] is False
    assert run["clicksCorrelated"] == 1
    assert run["correlations"][0]["clickLogId"] == log["id"]
    assert run["correlations"][0]["confidence"] == "high"

    stats = (await client.get("/analytics/conversions")).json()["stats"]
    assert stats["conversions"] == 1
    assert stats["totalRevenue"] == 899.0

    recent = (await client.get("/analytics/conversions/recent")).json()["conversions"]
    assert recent[0]["conversionData"]["orderId"] == "2000001"

    # Same orders again: nothing new
    again = (await client.post("/analytics/correlate-conversions", json={"sellerId": "seller-1"})).json()
    assert again["clicksCorrelated"] == 0
    assert again["alreadyAttributed"] == 1


@pytest.mark.asyncio
async def test_correlate_clamps_out_of_range_values(client):
    use_orders()
    resp = await client.post("/analytics/correlate-conversions", json={
        "sellerId": "seller-1", "timeWindowHours": 10_000, "orderLimit": 1, "dryRun": True,
    })
    assert resp.status_code == 200
    assert resp.json()["dryRun"] is True


@pytest.mark.asyncio
async def test_correlate_requires_seller(client):
    use_orders()
    resp = await client.post("/analytics/correlate-conversions", json={})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_correlate_while_running_is_409(client):
    use_orders()
    async with TestSession() as s:
        await acquire_lease(s, owner="other")
    resp = await client.post("/analytics/correlate-conversions", json={"sellerId": "seller-1"})
    assert resp.status_code == 409
    assert resp.json()["error"] == "already_running"


@pytest.mark.asyncio
async def test_correlate_marketplace_failure_is_502(client):
    from src.errors import ExternalServiceError
    from src.services.marketplace import OrderSource

    class Down(OrderSource):
        async def fetch_recent(self, seller_id, limit):
            raise ExternalServiceError("Marketplace API returned 503")

    app.dependency_overrides[get_order_source] = lambda: Down()
    resp = await client.post("/analytics/correlate-conversions", json={"sellerId": "seller-1"})
    assert resp.status_code == 502
    assert resp.json() == {"error": "external_service_error", "message": "Marketplace API returned 503"}


# ── Analytics ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_analytics_empty_ledger(client):
    stats = (await client.get("/analytics/conversions", params={"excludeOrphans": "true"})).json()["stats"]
    assert stats["totalLinks"] == 0
    assert stats["conversionRate"] == 0.0
    assert (await client.get("/analytics/top-products")).json() == {"products": []}
    assert (await client.get("/analytics/top-region")).json() == {"regions": []}


@pytest.mark.asyncio
async def test_top_products_and_regions(client, seed_click_log):
    created = utcnow() - timedelta(hours=1)
    for order_id, product, state, amount in [
        ("A", "Malla", "Jalisco", 300), ("B", "Rollo", "Nuevo León", 500), ("C", "Malla", "Jalisco", 100),
    ]:
        await seed_click_log(
            product_ref=product,
            created_at=created,
            conversion=ConversionData(order_id=order_id, total_amount=amount, shipping_state=state),
            method=CorrelationMethod.ENHANCED,
        )

    products = (await client.get("/analytics/top-products", params={"limit": 1})).json()["products"]
    assert products == [{"name": "Rollo", "conversions": 1, "revenue": 500.0}]

    regions = (await client.get("/analytics/top-region")).json()["regions"]
    assert [r["name"] for r in regions] == ["Nuevo León", "Jalisco"]
    assert regions[1]["conversions"] == 2
