"""Domain exceptions for the attribution engine.

Each carries the HTTP status and error code the API layer renders in the
standard ``{"error": ..., "message": ...}`` envelope.
"""
from __future__ import annotations


class AttributionError(Exception):
    """Base class for all expected, client-visible failures."""

    status_code = 500
    code = "attribution_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AttributionError, ValueError):
    """Malformed input (bad URL, empty product name, non-positive amount)."""

    status_code = 400
    code = "validation_error"


class NotFound(AttributionError, LookupError):
    """Unknown or tampered tracked link."""

    status_code = 404
    code = "not_found"


class Conflict(AttributionError):
    """The order is already attributed to another ClickLog."""

    status_code = 409
    code = "conflict"

    def __init__(self, message: str, order_id: str | None = None):
        super().__init__(message)
        self.order_id = order_id


class AlreadyRunning(AttributionError):
    """Another correlation run holds the ledger lease."""

    status_code = 409
    code = "already_running"

    def __init__(self, message: str, owner: str | None = None, expires_at=None):
        super().__init__(message)
        self.owner = owner
        self.expires_at = expires_at


class ExternalServiceError(AttributionError):
    """The marketplace order feed failed (network, auth, bad payload)."""

    status_code = 502
    code = "external_service_error"
