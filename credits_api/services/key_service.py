"""
API Key Service
===============

Business logic for API key management with database persistence.
"""

import hmac
import re
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from credits_api.config import get_settings
from credits_api.errors import InvalidApiKey, NotFound
from credits_api.models.db_models import APIKey, User, hash_key, to_naive_utc, utcnow

logger = structlog.get_logger(__name__)


def generate_api_key(prefix: Optional[str] = None) -> str:
    """A new plaintext key: prefix followed by 32 lowercase hex characters."""
    prefix = get_settings().api_key_prefix if prefix is None else prefix
    return f"{prefix}{uuid.uuid4().hex}"


def key_pattern(prefix: Optional[str] = None) -> "re.Pattern[str]":
    prefix = get_settings().api_key_prefix if prefix is None else prefix
    return re.compile(rf"^{re.escape(prefix)}[0-9a-f]{{32}}$")


class APIKeyService:
    """Service for managing API keys."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_key(
        self,
        user_id: str,
        name: str,
        expires_at: Optional[datetime] = None,
    ) -> Tuple[APIKey, str]:
        """
        Create a new API key for ``user_id``.

        Returns:
            Tuple of (APIKey, full_key)
            The full_key is only available at creation.
        """
        full_key = generate_api_key()
        api_key = APIKey(
            user_id=user_id,
            name=name,
            hashed_key=hash_key(full_key),
            expires_at=to_naive_utc(expires_at),
        )
        self.db.add(api_key)
        await self.db.flush()

        logger.info("API key created", user_id=user_id, key_id=api_key.id)
        return api_key, full_key

    async def authenticate(self, full_key: Optional[str]) -> APIKey:
        """
        Resolve a plaintext key to its API key and record the use.

        Raises:
            InvalidApiKey: malformed, unknown or expired key, or a banned owner.
                The reasons are not distinguished to the caller.
        """
        if not full_key or not key_pattern().match(full_key):
            raise InvalidApiKey("Invalid API key")

        key_hash = hash_key(full_key)
        result = await self.db.execute(
            select(APIKey, User.banned)
            .outerjoin(User, User.id == APIKey.user_id)
            .where(APIKey.hashed_key == key_hash)
        )
        row = result.first()
        if row is None:
            raise InvalidApiKey("Invalid API key")

        api_key, banned = row
        if not hmac.compare_digest(api_key.hashed_key, key_hash):
            raise InvalidApiKey("Invalid API key")

        now = utcnow()
        if api_key.is_expired(now):
            logger.info("Expired API key rejected", key_id=api_key.id)
            raise InvalidApiKey("Invalid API key")
        if banned:
            logger.warning("API key of banned user rejected", key_id=api_key.id, user_id=api_key.user_id)
            raise InvalidApiKey("Invalid API key")

        api_key.last_used_at = now
        await self.db.flush()
        return api_key

    async def list_keys(self, user_id: str) -> List[APIKey]:
        """List a user's API keys, newest first."""
        result = await self.db.execute(
            select(APIKey)
            .where(APIKey.user_id == user_id)
            .order_by(APIKey.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_key(self, key_id: str, user_id: str) -> APIKey:
        result = await self.db.execute(
            select(APIKey).where(APIKey.id == key_id, APIKey.user_id == user_id)
        )
        api_key = result.scalar_one_or_none()
        if api_key is None:
            raise NotFound("API key not found")
        return api_key

    async def revoke(self, key_id: str, requesting_user_id: str) -> None:
        """Delete one of the requesting user's keys."""
        api_key = await self.get_key(key_id, requesting_user_id)
        await self.db.delete(api_key)
        await self.db.flush()
        logger.info("API key revoked", user_id=requesting_user_id, key_id=key_id)

    async def delete_expired(self, now: Optional[datetime] = None) -> int:
        """Remove every expired key. Returns how many were deleted."""
        now = now or utcnow()
        result = await self.db.execute(
            delete(APIKey).where(APIKey.expires_at.is_not(None), APIKey.expires_at <= now)
        )
        deleted = result.rowcount or 0
        if deleted:
            logger.info("Expired API keys deleted", count=deleted)
        return deleted
