"""
Rate Limiting
=============

Implements rate limiting using slowapi with optional Redis backend.
"""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from credits_api.config import get_settings
from credits_api.models.db_models import hash_key


def _get_key_func(request: Request) -> str:
    """
    Get rate limit key from API key or IP address.

    Billable calls are limited per API key; the key is hashed so the
    plaintext never reaches the limiter storage.
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return f"key:{hash_key(auth_header[7:])[:32]}"

    return f"ip:{get_remote_address(request)}"


def create_limiter() -> Limiter:
    """Create and configure the rate limiter."""
    settings = get_settings()

    # In-memory unless a non-local Redis is configured
    storage_uri = "memory://"
    if settings.redis_url and "localhost" not in settings.redis_url and "127.0.0.1" not in settings.redis_url:
        storage_uri = settings.redis_url

    return Limiter(
        key_func=_get_key_func,
        storage_uri=storage_uri,
        strategy="fixed-window",
        enabled=settings.rate_limit_enabled,
    )


# Global limiter instance
limiter = create_limiter()


def get_rate_limit_string() -> str:
    """Get the rate limit string for use in decorators."""
    settings = get_settings()
    return f"{settings.rate_limit_requests_per_minute}/minute"
