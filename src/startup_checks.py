"""Startup validation — catch misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging
import sys

from config.settings import DEFAULT_SIGNING_KEY, settings
from src.services.correlation import EnhancedMatchMode
from src.services.similarity import SIMILARITY_BACKENDS

logger = logging.getLogger(__name__)


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit for critical misconfigurations in production.
    """
    warnings: list[str] = []
    is_prod = settings.DATABASE_URL and "sqlite" not in settings.DATABASE_URL

    # Critical: tracked-link tokens must not be signed with the dev key
    if is_prod and settings.LINK_SIGNING_KEY == DEFAULT_SIGNING_KEY:
        logger.critical("LINK_SIGNING_KEY is still the default! Set a real key for production.")
        sys.exit(1)

    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to * — restrict in production")

    if not settings.MARKETPLACE_ACCESS_TOKEN:
        warnings.append("MARKETPLACE_ACCESS_TOKEN not set — correlation runs will fail to fetch orders")

    if settings.CORRELATION_INTERVAL_HOURS > 0 and not settings.MARKETPLACE_SELLER_ID:
        warnings.append("CORRELATION_INTERVAL_HOURS set but MARKETPLACE_SELLER_ID is empty — scheduler disabled")

    if not settings.API_BASE_URL:
        warnings.append("API_BASE_URL not set — tracked links will use relative URLs")

    if settings.ENHANCED_MATCH_MODE not in {m.value for m in EnhancedMatchMode}:
        warnings.append(f"ENHANCED_MATCH_MODE={settings.ENHANCED_MATCH_MODE!r} is not a known mode")

    if settings.ENHANCED_SIMILARITY_BACKEND not in SIMILARITY_BACKENDS:
        warnings.append(
            f"ENHANCED_SIMILARITY_BACKEND={settings.ENHANCED_SIMILARITY_BACKEND!r} is not a known backend"
        )

    for w in warnings:
        logger.warning("⚠️  %s", w)

    if not warnings:
        logger.info("✅ All startup checks passed")

    return warnings
