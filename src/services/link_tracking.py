"""
Tracked Link Issuer & Click Recorder.

Instead of handing customers raw marketplace URLs, the bot embeds a tracked
link that routes through our server. This gives us:
1. A ledger row per issued link (customer, product, campaign)
2. Server-side first-click timestamps (not dependent on client JS)
3. The marketplace item id the customer was shown, for exact order matching

Flow:
  Bot replies with {API_BASE_URL}/r/{token} →
  Customer taps it →
  GET /r/{token} → server stamps clickedAt (first hit only) + 302 to originalUrl
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import re
import uuid
from typing import Optional
from urllib.parse import urlparse

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.db.click_tables import ClickLogRow
from src.db.repository import ClickLogRepository
from src.errors import NotFound, ValidationError
from src.models.click_log import ClickLog, utcnow

logger = logging.getLogger(__name__)

_ID_LENGTH = 12
_SIG_LENGTH = 8

# Mercado Libre style item ids: site prefix + digits, e.g. MLM123456 or MLM-123456
_ITEM_ID_RE = re.compile(r"\b(ML[A-Z])-?(\d+)", re.IGNORECASE)


def generate_click_id() -> str:
    return uuid.uuid4().hex[:_ID_LENGTH]


def _sign(click_id: str, key: str | None = None) -> str:
    """Short HMAC signature over the click id (prevents enumeration/tampering)."""
    secret = (key or settings.LINK_SIGNING_KEY).encode()
    return hmac.new(secret, click_id.encode(), hashlib.sha256).hexdigest()[:_SIG_LENGTH]


def make_token(click_id: str) -> str:
    return f"{click_id}-{_sign(click_id)}"


def parse_token(token: str) -> str:
    """Return the click id encoded in a tracked-link token.

    Raises NotFound for malformed or tampered tokens.
    """
    click_id, sep, sig = (token or "").strip().partition("-")
    if not sep or len(click_id) != _ID_LENGTH or not hmac.compare_digest(sig, _sign(click_id)):
        raise NotFound("Unknown tracked link")
    return click_id


def build_tracked_url(click_id: str, base_url: str | None = None) -> str:
    base = settings.API_BASE_URL if base_url is None else base_url
    return f"{base.rstrip('/')}/r/{make_token(click_id)}"


def is_absolute_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def extract_item_id(url: str) -> Optional[str]:
    """Pull a marketplace item id out of a product URL (MLM-123 → MLM123)."""
    match = _ITEM_ID_RE.search(url or "")
    if not match:
        return None
    return f"{match.group(1).upper()}{match.group(2)}"


async def issue_link(
    session: AsyncSession,
    customer_ref: str,
    product_ref: str,
    original_url: str,
    item_id: str | None = None,
    campaign_ref: str | None = None,
    customer_name: str | None = None,
    customer_city: str | None = None,
    base_url: str | None = None,
) -> ClickLog:
    """Create a ClickLog for a customer/product pair and return it with its tracked URL."""
    customer_ref = (customer_ref or "").strip()
    if not customer_ref:
        raise ValidationError("customerRef is required")
    original_url = (original_url or "").strip()
    if not is_absolute_url(original_url):
        raise ValidationError(f"originalUrl must be an absolute http(s) URL: {original_url!r}")

    click_id = generate_click_id()
    row = ClickLogRow(
        id=click_id,
        customer_ref=customer_ref,
        product_ref=(product_ref or "").strip() or "Manual link",
        item_id=(item_id or "").strip().upper() or extract_item_id(original_url),
        original_url=original_url,
        tracked_url=build_tracked_url(click_id, base_url),
        campaign_ref=campaign_ref or None,
        customer_name=(customer_name or "").strip() or None,
        customer_city=(customer_city or "").strip() or None,
        created_at=utcnow(),
        converted=False,
        is_orphan=False,
    )
    click_log = await ClickLogRepository(session).insert(row)
    await session.commit()

    logger.info(
        "Issued tracked link %s for customer=%s product=%r item=%s",
        click_id, customer_ref, click_log.product_ref, click_log.item_id,
    )
    return click_log


async def record_click(
    session: AsyncSession,
    token: str,
    user_agent: str | None = None,
    ip_address: str | None = None,
    referrer: str | None = None,
) -> str:
    """Stamp the first visit of a tracked link and return the redirect target.

    Repeat or concurrent visits leave clickedAt untouched.
    """
    click_id = parse_token(token)
    repo = ClickLogRepository(session)
    click_log = await repo.get(click_id)
    if click_log is None:
        raise NotFound("Unknown tracked link")

    if click_log.clicked_at is None:
        clicked_at = max(utcnow(), click_log.created_at)
        first = await repo.mark_clicked(click_id, clicked_at, user_agent, ip_address, referrer)
        await session.commit()
        if first:
            logger.info("First click on %s (customer=%s)", click_id, click_log.customer_ref)

    return click_log.original_url
