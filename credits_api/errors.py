"""
Billing Errors
==============

Domain exceptions raised by the services. Each carries the HTTP status and
error code the API renders for it (see ``credits_api.main``).
"""

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidRequest(BillingError):
    status_code = 400
    error_code = "invalid_request"


class Unauthorized(BillingError):
    """Missing or invalid session, or cron secret mismatch."""
    status_code = 401
    error_code = "unauthorized"


class InvalidApiKey(Unauthorized):
    """API key is malformed, unknown, expired or belongs to a banned user."""
    error_code = "invalid_api_key"


class Forbidden(BillingError):
    status_code = 403
    error_code = "forbidden"


class InsufficientBalance(BillingError):
    """A debit would take the balance below zero."""
    status_code = 402
    error_code = "insufficient_balance"

    def __init__(self, user_id: str, required: int, available: int):
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}.",
            details={"required": required, "available": available},
        )
        self.user_id = user_id
        self.required = required
        self.available = available


class NotFound(BillingError):
    """
    Resource is absent or not owned by the caller.

    The two cases are deliberately indistinguishable.
    """
    status_code = 404
    error_code = "not_found"


class Conflict(BillingError):
    status_code = 409
    error_code = "conflict"


class InvalidWebhookEvent(BillingError):
    """Webhook payload failed signature verification or could not be parsed."""
    status_code = 400
    error_code = "invalid_webhook"


class ProviderError(BillingError):
    """The payment provider call failed."""
    status_code = 502
    error_code = "provider_error"


class ProviderNotConfigured(BillingError):
    status_code = 503
    error_code = "billing_not_configured"
