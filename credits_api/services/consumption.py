"""
Consumption Accounting
======================

Prices billable actions (API calls, storage) against the configured rate
table and monthly free quotas, and debits the ledger when an action falls
outside the quota.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from credits_api.config import Settings, get_settings
from credits_api.errors import Conflict, InsufficientBalance
from credits_api.models.db_models import (
    ACTIVE_STATUSES,
    LedgerReason,
    SubscriptionRecord,
    UsageRecord,
    UsageService,
    billing_period,
)
from credits_api.services.ledger import LedgerService

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CreditRates:
    """Rate table and free quotas used to price consumption."""
    cost_per_call: int = 1
    cost_per_gb_month: int = 10
    paid_free_quota_calls: int = 0
    paid_free_quota_gb: float = 0
    free_tier_quota_calls: int = 100
    free_tier_quota_gb: float = 1

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CreditRates":
        settings = settings or get_settings()
        return cls(
            cost_per_call=settings.credits_cost_per_call,
            cost_per_gb_month=settings.credits_cost_per_gb_month,
            paid_free_quota_calls=settings.paid_free_quota_calls,
            paid_free_quota_gb=settings.paid_free_quota_gb,
            free_tier_quota_calls=settings.free_tier_quota_calls,
            free_tier_quota_gb=settings.free_tier_quota_gb,
        )

    def call_quota(self, paid: bool) -> float:
        return self.paid_free_quota_calls if paid else self.free_tier_quota_calls

    def storage_quota(self, paid: bool) -> float:
        return self.paid_free_quota_gb if paid else self.free_tier_quota_gb


@dataclass
class ChargeResult:
    """Outcome of charging one billable action."""
    reference_id: str
    charged: int
    within_quota: bool
    applied: bool
    balance: int
    usage_this_period: float
    quota: float


class ConsumptionService:
    """Service for charging billable actions."""

    def __init__(self, db: AsyncSession, rates: Optional[CreditRates] = None):
        self.db = db
        self.rates = rates or CreditRates.from_settings()
        self.ledger = LedgerService(db)

    async def is_paid_user(self, user_id: str) -> bool:
        """A user is paid while one of their subscriptions is active or trialing."""
        result = await self.db.execute(
            select(SubscriptionRecord.id)
            .where(
                SubscriptionRecord.user_id == user_id,
                SubscriptionRecord.status.in_(ACTIVE_STATUSES),
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def get_period_usage(self, user_id: str, service: UsageService, period: str) -> float:
        result = await self.db.execute(
            select(func.coalesce(func.sum(UsageRecord.quantity), 0)).where(
                UsageRecord.user_id == user_id,
                UsageRecord.service == service.value,
                UsageRecord.period == period,
            )
        )
        return float(result.scalar() or 0)

    async def _get_usage(self, reference_id: str) -> Optional[UsageRecord]:
        result = await self.db.execute(
            select(UsageRecord).where(UsageRecord.reference_id == reference_id)
        )
        return result.scalar_one_or_none()

    async def charge_for_api_call(self, user_id: str, request_id: str, calls: int = 1) -> ChargeResult:
        """
        Account for ``calls`` API calls made under ``request_id``.

        Retrying with the same ``request_id`` never charges twice.

        Raises:
            InsufficientBalance: the calls are outside the free quota and the
                balance does not cover them. The caller must reject the call.
            Conflict: ``request_id`` was already used by another user.
        """
        if calls <= 0:
            raise ValueError("calls must be positive")

        paid = await self.is_paid_user(user_id)
        return await self._charge(
            user_id=user_id,
            service=UsageService.API_CALL,
            reason=LedgerReason.API_CALL,
            quantity=calls,
            cost=calls * self.rates.cost_per_call,
            quota=self.rates.call_quota(paid),
            reference_id=f"apicall:{user_id}:{request_id}",
            description=f"API call usage ({calls} call{'s' if calls != 1 else ''})",
        )

    async def charge_for_storage(
        self,
        user_id: str,
        gigabyte_months: float,
        request_id: str,
    ) -> ChargeResult:
        """Account for ``gigabyte_months`` of storage under ``request_id``."""
        if gigabyte_months <= 0:
            raise ValueError("gigabyte_months must be positive")

        paid = await self.is_paid_user(user_id)
        return await self._charge(
            user_id=user_id,
            service=UsageService.STORAGE,
            reason=LedgerReason.STORAGE,
            quantity=gigabyte_months,
            cost=math.ceil(gigabyte_months * self.rates.cost_per_gb_month),
            quota=self.rates.storage_quota(paid),
            reference_id=f"storage:{user_id}:{request_id}",
            description=f"Storage usage ({gigabyte_months:g} GB-months)",
        )

    async def _charge(
        self,
        user_id: str,
        service: UsageService,
        reason: LedgerReason,
        quantity: float,
        cost: int,
        quota: float,
        reference_id: str,
        description: str,
        now: Optional[datetime] = None,
    ) -> ChargeResult:
        existing = await self._get_usage(reference_id)
        if existing is not None:
            return await self._replay(user_id, existing, quota)

        period = billing_period(now)

        try:
            async with self.db.begin_nested():
                # Serialises this user's charges so two requests cannot both
                # fit into the last unit of free quota
                await self.ledger.lock_account(user_id)

                used_before = await self.get_period_usage(user_id, service, period)
                within_quota = used_before + quantity <= quota
                charge = 0 if within_quota else cost

                self.db.add(
                    UsageRecord(
                        user_id=user_id,
                        service=service.value,
                        quantity=quantity,
                        period=period,
                        reference_id=reference_id,
                        credits_charged=charge,
                    )
                )
                await self.db.flush()

                if charge > 0:
                    result = await self.ledger.apply_transaction(
                        user_id,
                        -charge,
                        reason,
                        reference_id,
                        description=description,
                    )
                    balance = result.balance
                else:
                    balance = await self.ledger.get_balance(user_id)
        except IntegrityError:
            duplicate = await self._get_usage(reference_id)
            if duplicate is None:
                raise
            return await self._replay(user_id, duplicate, quota)
        except InsufficientBalance as exc:
            logger.warning(
                "Billable action denied",
                user_id=user_id,
                service=service.value,
                reference_id=reference_id,
                required=exc.required,
                available=exc.available,
            )
            raise

        return ChargeResult(
            reference_id=reference_id,
            charged=charge,
            within_quota=within_quota,
            applied=True,
            balance=balance,
            usage_this_period=used_before + quantity,
            quota=quota,
        )

    async def _replay(self, user_id: str, record: UsageRecord, quota: float) -> ChargeResult:
        """Result for a request id that was already charged."""
        if record.user_id != user_id:
            logger.warning(
                "Usage reference belongs to another user",
                user_id=user_id,
                owner=record.user_id,
                reference_id=record.reference_id,
            )
            raise Conflict("Request id is already used by another account")

        return ChargeResult(
            reference_id=record.reference_id,
            charged=record.credits_charged,
            within_quota=record.credits_charged == 0,
            applied=False,
            balance=await self.ledger.get_balance(record.user_id),
            usage_this_period=await self.get_period_usage(
                record.user_id, UsageService(record.service), record.period
            ),
            quota=quota,
        )

    async def get_quota_usage(self, user_id: str) -> Dict[str, Any]:
        """Usage and limits for the current billing month."""
        period = billing_period()
        paid = await self.is_paid_user(user_id)

        return {
            "period": period,
            "paid": paid,
            "api_calls": {
                "used": await self.get_period_usage(user_id, UsageService.API_CALL, period),
                "limit": self.rates.call_quota(paid),
            },
            "storage": {
                "used": await self.get_period_usage(user_id, UsageService.STORAGE, period),
                "limit": self.rates.storage_quota(paid),
            },
        }
