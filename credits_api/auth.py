"""
Authentication
==============

Session and API key authentication as FastAPI dependencies.

Both schemes use the ``Authorization: Bearer`` header. User-facing endpoints
take a session token issued by the auth provider; billable endpoints take an
API key. Either way the route receives an explicit identity.
"""

from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Depends, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from credits_api.config import get_settings
from credits_api.database import get_db
from credits_api.errors import Forbidden, InvalidApiKey, Unauthorized
from credits_api.models.db_models import APIKey, LedgerReason, User
from credits_api.services.key_service import APIKeyService
from credits_api.services.ledger import LedgerService
from credits_api.services.session_token import decode_session_token

logger = structlog.get_logger(__name__)


# Security schemes
session_security = HTTPBearer(
    scheme_name="Session",
    description="Session token issued by the auth provider.",
    auto_error=False,
)

api_key_security = HTTPBearer(
    scheme_name="API Key",
    description="API key authentication. Use your API key as the Bearer token.",
    auto_error=False,
)


@dataclass(frozen=True)
class AuthContext:
    """The authenticated user of a request."""
    user_id: str
    email: Optional[str] = None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


async def grant_signup_credits(db: AsyncSession, user_id: str) -> bool:
    """Welcome bonus, granted at most once per user."""
    amount = get_settings().signup_credits
    if amount <= 0:
        return False
    result = await LedgerService(db).apply_transaction(
        user_id,
        amount,
        LedgerReason.SIGNUP_BONUS,
        f"signup:{user_id}",
        description="Welcome bonus",
    )
    if result.applied:
        logger.info("Signup credits granted", user_id=user_id, credits=amount)
    return result.applied


async def ensure_user(db: AsyncSession, context: AuthContext) -> User:
    """Upsert the user row for an authenticated identity."""
    result = await db.execute(select(User).where(User.id == context.user_id))
    user = result.scalar_one_or_none()
    if user is not None:
        if context.email and user.email != context.email:
            user.email = context.email
        return user

    user = User(id=context.user_id, email=context.email)
    try:
        async with db.begin_nested():
            db.add(user)
            await db.flush()
    except IntegrityError:
        result = await db.execute(select(User).where(User.id == context.user_id))
        user = result.scalar_one()
    else:
        logger.info("User registered with billing", user_id=context.user_id)
        await grant_signup_credits(db, context.user_id)
    return user


# =============================================================================
# FastAPI Dependencies
# =============================================================================

async def get_key_service(db: AsyncSession = Depends(get_db)) -> APIKeyService:
    """Get API key service instance."""
    return APIKeyService(db)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(session_security),
    db: AsyncSession = Depends(get_db),
) -> AuthContext:
    """Validate the session token and return the caller's identity."""
    if not credentials:
        raise Unauthorized("Authentication required")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise Unauthorized(str(exc)) from exc

    context = AuthContext(
        user_id=str(payload["sub"]),
        email=payload.get("email"),
        role=str(payload.get("role") or "user"),
    )
    user = await ensure_user(db, context)
    if user.banned:
        raise Forbidden("User is banned")
    return context


async def require_admin(user: AuthContext = Depends(get_current_user)) -> AuthContext:
    if not user.is_admin:
        raise Forbidden("Administrator role required")
    return user


async def get_api_key_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(api_key_security),
    key_service: APIKeyService = Depends(get_key_service),
) -> APIKey:
    """
    FastAPI dependency to validate the API key from the Authorization header.

    Usage:
        @router.post("/billable")
        async def billable(api_key: APIKey = Depends(get_api_key_user)):
            charge(api_key.user_id, ...)
    """
    if not credentials:
        raise InvalidApiKey("API key required")
    return await key_service.authenticate(credentials.credentials)
