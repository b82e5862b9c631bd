"""App settings — loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()

DEFAULT_SIGNING_KEY = "attribution-dev-link-key-change-in-prod"


class Settings:
    # API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///attribution.db")

    # Tracked links (base URL for /r/{token} redirect links)
    API_BASE_URL = os.getenv("API_BASE_URL", "")
    FALLBACK_LANDING_URL = os.getenv("FALLBACK_LANDING_URL", "https://www.mercadolibre.com.mx")

    # Link signing (for tamper-proof redirect tokens)
    LINK_SIGNING_KEY = os.getenv("LINK_SIGNING_KEY", DEFAULT_SIGNING_KEY)

    # Marketplace order feed
    MARKETPLACE_API_BASE = os.getenv("MARKETPLACE_API_BASE", "https://api.mercadolibre.com")
    MARKETPLACE_ACCESS_TOKEN = os.getenv("MARKETPLACE_ACCESS_TOKEN", "")
    MARKETPLACE_SELLER_ID = os.getenv("MARKETPLACE_SELLER_ID", "")
    MARKETPLACE_TIMEOUT_SECONDS = float(os.getenv("MARKETPLACE_TIMEOUT_SECONDS", "15"))

    # Correlation engine
    CORRELATION_WINDOW_HOURS = int(os.getenv("CORRELATION_WINDOW_HOURS", "48"))
    CORRELATION_ORDER_LIMIT = int(os.getenv("CORRELATION_ORDER_LIMIT", "50"))
    CORRELATION_INTERVAL_HOURS = int(os.getenv("CORRELATION_INTERVAL_HOURS", "0"))  # 0 = scheduler off
    CORRELATION_LEASE_SECONDS = int(os.getenv("CORRELATION_LEASE_SECONDS", "300"))

    # Enhanced tier: "text_or_city", "text_and_city" or "text_only"
    ENHANCED_MATCH_MODE = os.getenv("ENHANCED_MATCH_MODE", "text_or_city")
    ENHANCED_SIMILARITY_THRESHOLD = float(os.getenv("ENHANCED_SIMILARITY_THRESHOLD", "0.6"))
    ENHANCED_SIMILARITY_BACKEND = os.getenv("ENHANCED_SIMILARITY_BACKEND", "token_overlap")

    # Orphan tier
    ORPHAN_MIN_SCORE = int(os.getenv("ORPHAN_MIN_SCORE", "70"))
    ORPHAN_LOOKBACK_DAYS = int(os.getenv("ORPHAN_LOOKBACK_DAYS", "30"))

    # CORS origins (comma-separated, or * for dev)
    CORS_ORIGINS = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")
    ]

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Logging
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
