"""Shared test fixtures — single test DB for all test modules."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from src.db.tables import Base
from src.db.engine import get_session

# Use a shared in-memory DB with check_same_thread=False and StaticPool
# This ensures all connections see the same in-memory database.
from sqlalchemy.pool import StaticPool

TEST_DB_URL = "sqlite+aiosqlite:///file:test?mode=memory&cache=shared&uri=true"

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)


async def override_get_session():
    async with TestSession() as session:
        yield session


# Import app and override BEFORE any test module imports app
from src.api.main import app  # noqa: E402

app.dependency_overrides[get_session] = override_get_session

# Patch the engine module so anything opening its own session uses the test DB
import src.db.engine as _engine_mod  # noqa: E402
_engine_mod.async_session = TestSession
_engine_mod.engine = test_engine

# A fixed "now" for ledger fixtures: 2026-01-05 12:00 UTC
NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create tables before each test, drop after."""
    import src.db.click_tables  # noqa: F401

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    app.dependency_overrides.pop(_order_source_dependency(), None)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


def _order_source_dependency():
    from src.api.analytics import get_order_source
    return get_order_source


@pytest_asyncio.fixture
async def session():
    async with TestSession() as s:
        yield s


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def seed_click_log():
    """Factory: insert a ClickLog row directly with explicit timestamps."""
    from src.db.click_tables import ClickLogRow
    from src.db.repository import ClickLogRepository
    from src.services.link_tracking import build_tracked_url, generate_click_id

    async def _seed(
        customer_ref: str = "cust-1",
        product_ref: str = "Malla sombra 90% 4x6",
        created_at: datetime | None = None,
        hours_before: float | None = None,
        item_id: str | None = None,
        customer_name: str | None = None,
        customer_city: str | None = None,
        clicked_at: datetime | None = None,
        campaign_ref: str | None = None,
        conversion=None,
        method=None,
        converted_at: datetime | None = None,
        is_orphan: bool = False,
    ):
        if created_at is None:
            created_at = NOW - timedelta(hours=hours_before or 0)
        click_id = generate_click_id()
        row = ClickLogRow(
            id=click_id,
            customer_ref=customer_ref,
            product_ref=product_ref,
            item_id=item_id,
            original_url=f"https://articulo.mercadolibre.com.mx/{item_id or 'MLM-1'}",
            tracked_url=build_tracked_url(click_id, "http://test"),
            campaign_ref=campaign_ref,
            customer_name=customer_name,
            customer_city=customer_city,
            created_at=created_at,
            clicked_at=clicked_at,
            converted=False,
            is_orphan=is_orphan,
        )
        async with TestSession() as s:
            repo = ClickLogRepository(s)
            if conversion is not None:
                log = await repo.insert_converted(row, conversion, method, converted_at or created_at)
            else:
                log = await repo.insert(row)
            await s.commit()
        return log

    return _seed


@pytest_asyncio.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
