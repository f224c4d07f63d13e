"""Shared-secret authentication for cron endpoints."""

import hmac
from typing import Optional

import structlog
from fastapi import Query, Request

from credits_api.config import get_settings
from credits_api.errors import Unauthorized

logger = structlog.get_logger(__name__)


def _presented_secret(request: Request, secret: Optional[str]) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return secret


async def verify_cron_secret(
    request: Request,
    secret: Optional[str] = Query(default=None, description="Cron secret, if not sent as a Bearer token"),
) -> None:
    """
    FastAPI dependency guarding cron endpoints.

    The secret is accepted as ``Authorization: Bearer <secret>`` or as the
    ``secret`` query parameter. With no ``CRON_SECRET`` configured every
    request is let through.
    """
    expected = get_settings().cron_secret
    if not expected:
        logger.warning("CRON_SECRET is not set; cron endpoint is unauthenticated", path=request.url.path)
        return

    presented = _presented_secret(request, secret)
    if not presented or not hmac.compare_digest(presented.encode(), expected.encode()):
        logger.warning(
            "Cron authentication failed",
            path=request.url.path,
            client=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
        raise Unauthorized("CRON_AUTH_FAILED")
