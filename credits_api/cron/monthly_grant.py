"""
Monthly Grant Job
=================

Grants the free plan's monthly credits to every user without an active
subscription.

Each user is handled in a session and transaction of their own, so one
failure never affects the rest of the batch. The grant's reference id is
``monthly:<YYYY-MM>:<user_id>``: running the job again in the same month, or
two runs at once, grants nothing twice.
"""

import asyncio
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credits_api.config import get_settings
from credits_api.models.db_models import (
    ACTIVE_STATUSES,
    LedgerReason,
    SubscriptionRecord,
    User,
    billing_period,
)
from credits_api.services.ledger import LedgerService

logger = structlog.get_logger(__name__)


@dataclass
class GrantSummary:
    success: bool
    period: str
    credits_per_user: int
    total_users: int = 0
    success_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    total_credits_distributed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def grant_reference(period: str, user_id: str) -> str:
    return f"monthly:{period}:{user_id}"


async def list_free_user_ids(db: AsyncSession) -> List[str]:
    """Users that are not banned and have no active or trialing subscription."""
    paying = select(SubscriptionRecord.user_id).where(SubscriptionRecord.status.in_(ACTIVE_STATUSES))
    result = await db.execute(
        select(User.id)
        .where(User.banned.is_(False), User.id.not_in(paying))
        .order_by(User.id)
    )
    return list(result.scalars().all())


async def _grant_one(
    session_factory: async_sessionmaker[AsyncSession],
    user_id: str,
    amount: int,
    period: str,
) -> bool:
    # Closing the session rolls back anything left uncommitted
    async with session_factory() as db:
        result = await LedgerService(db).apply_transaction(
            user_id,
            amount,
            LedgerReason.MONTHLY_GRANT,
            grant_reference(period, user_id),
            description=f"Monthly free credits ({period})",
        )
        await db.commit()
    return result.applied


async def grant_monthly_free_credits(
    session_factory: async_sessionmaker[AsyncSession],
    now: Optional[datetime] = None,
    amount: Optional[int] = None,
) -> GrantSummary:
    """
    Run the monthly grant for the billing month containing ``now``.

    Users who already received this month's grant are counted as skipped.
    Per-user errors, including exceeding the per-user timeout, are collected
    in the summary.
    """
    settings = get_settings()
    period = billing_period(now)
    amount = settings.free_monthly_credits if amount is None else amount
    log = logger.bind(job="monthly_grant", period=period)

    if amount <= 0:
        log.error("No monthly credits configured for the free plan", credits=amount)
        return GrantSummary(
            success=False,
            period=period,
            credits_per_user=amount,
            message="No monthly credits configured",
        )

    try:
        async with session_factory() as db:
            user_ids = await list_free_user_ids(db)
    except Exception as exc:
        log.exception("Could not list users for monthly grant")
        return GrantSummary(success=False, period=period, credits_per_user=amount, message=str(exc))

    log.info("Starting monthly free credits distribution", total_users=len(user_ids), credits=amount)
    summary = GrantSummary(success=True, period=period, credits_per_user=amount, total_users=len(user_ids))

    for user_id in user_ids:
        try:
            applied = await asyncio.wait_for(
                _grant_one(session_factory, user_id, amount, period),
                timeout=settings.grant_job_user_timeout_seconds,
            )
        except asyncio.TimeoutError:
            summary.error_count += 1
            summary.errors.append({"user_id": user_id, "error": "timed out"})
            log.error("Monthly grant timed out", user_id=user_id)
            continue
        except Exception as exc:
            summary.error_count += 1
            summary.errors.append({"user_id": user_id, "error": str(exc)})
            log.exception("Monthly grant failed", user_id=user_id)
            continue

        if applied:
            summary.success_count += 1
        else:
            summary.skipped_count += 1

    summary.total_credits_distributed = summary.success_count * amount
    log.info(
        "Monthly free credits distribution completed",
        success_count=summary.success_count,
        skipped_count=summary.skipped_count,
        error_count=summary.error_count,
        total_credits_distributed=summary.total_credits_distributed,
    )
    return summary
