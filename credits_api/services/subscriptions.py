"""
Subscription Sync
=================

Keeps local subscription records converged with the payment provider.

Every provider event is claimed by inserting its payment event row first, so
a redelivered webhook is applied at most once. Records are only moved
forward in time: an event older than the last one applied is recorded as
stale and otherwise ignored.
"""

import dataclasses
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from credits_api.errors import Conflict, InvalidRequest, NotFound, ProviderNotConfigured
from credits_api.models.db_models import (
    ACTIVE_STATUSES,
    CURRENT_STATUSES,
    LedgerReason,
    PaymentEvent,
    SubscriptionRecord,
    SubscriptionStatus,
    to_naive_utc,
    utcnow,
)
from credits_api.services.ledger import LedgerService
from credits_api.services.plans import credits_for_price_id, plan_for_price_id
from credits_api.services.provider_events import (
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    ProviderEvent,
    SubscriptionDeleted,
    SubscriptionSnapshot,
    SubscriptionUpdated,
    subscription_id_of,
)
from credits_api.services.stripe_service import PaymentProvider

logger = structlog.get_logger(__name__)

CANCELED = SubscriptionStatus.CANCELED.value


@dataclass
class EventOutcome:
    """What applying one provider event did."""
    status: str  # applied, duplicate, stale, ignored or skipped
    event_type: str
    subscription_id: Optional[str] = None
    detail: Optional[str] = None
    credits_granted: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def _event_data(event: ProviderEvent) -> str:
    return json.dumps(dataclasses.asdict(event), default=str)


class SubscriptionService:
    """Service for subscription records and provider events."""

    def __init__(self, db: AsyncSession, provider: Optional[PaymentProvider] = None):
        self.db = db
        self.provider = provider
        self.ledger = LedgerService(db)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_by_external_id(self, external_subscription_id: str) -> Optional[SubscriptionRecord]:
        result = await self.db.execute(
            select(SubscriptionRecord).where(
                SubscriptionRecord.external_subscription_id == external_subscription_id
            )
        )
        return result.scalar_one_or_none()

    async def get_for_user(self, subscription_id: str, user_id: str) -> SubscriptionRecord:
        """
        A subscription record owned by ``user_id``.

        Raises:
            NotFound: the record does not exist or belongs to someone else.
        """
        result = await self.db.execute(
            select(SubscriptionRecord).where(
                SubscriptionRecord.id == subscription_id,
                SubscriptionRecord.user_id == user_id,
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFound("Subscription not found")
        return record

    async def list_for_user(self, user_id: str) -> List[SubscriptionRecord]:
        result = await self.db.execute(
            select(SubscriptionRecord)
            .where(SubscriptionRecord.user_id == user_id)
            .order_by(SubscriptionRecord.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_active_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        """
        The user's current subscription, past-due ones included.

        Whether the user counts as paying is decided on ``ACTIVE_STATUSES``
        elsewhere; a past-due subscription is still shown and still blocks a
        second checkout.
        """
        result = await self.db.execute(
            select(SubscriptionRecord)
            .where(
                SubscriptionRecord.user_id == user_id,
                SubscriptionRecord.status.in_(CURRENT_STATUSES),
            )
            .order_by(
                SubscriptionRecord.cancel_at_period_end,
                SubscriptionRecord.created_at.desc(),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_billing_info(self, user_id: str) -> Dict[str, Any]:
        """Balance, active subscription and subscription history of a user."""
        subscriptions = await self.list_for_user(user_id)
        active = await self.get_active_subscription(user_id)
        return {
            "balance": await self.ledger.get_balance(user_id),
            "active_subscription": active,
            "subscriptions": subscriptions,
        }

    # -------------------------------------------------------------------------
    # Provider events
    # -------------------------------------------------------------------------

    async def _claim_event(self, event: ProviderEvent) -> Optional[PaymentEvent]:
        """Insert the payment event row; None if the event id was already seen."""
        payment_event = PaymentEvent(
            provider_event_id=event.event_id,
            event_type=event.event_type,
            event_data=_event_data(event),
            outcome="pending",
        )
        try:
            async with self.db.begin_nested():
                self.db.add(payment_event)
                await self.db.flush()
        except IntegrityError:
            return None
        return payment_event

    async def apply_provider_event(self, event: ProviderEvent) -> EventOutcome:
        """
        Apply one normalized provider event to the local records.

        Applying the same event twice, or an event older than what a record
        already reflects, changes nothing.
        """
        log = logger.bind(
            event_id=event.event_id,
            event_type=event.event_type,
            external_subscription_id=subscription_id_of(event),
        )

        claim = await self._claim_event(event)
        if claim is None:
            log.info("Duplicate provider event ignored")
            return EventOutcome(status="duplicate", event_type=event.event_type)

        if isinstance(event, CheckoutCompleted):
            outcome = await self._on_checkout_completed(event)
        elif isinstance(event, SubscriptionUpdated):
            outcome = await self._on_subscription_updated(event)
        elif isinstance(event, SubscriptionDeleted):
            outcome = await self._on_subscription_deleted(event)
        elif isinstance(event, InvoicePaymentFailed):
            outcome = await self._on_invoice_payment_failed(event)
        elif isinstance(event, InvoicePaid):
            outcome = await self._on_invoice_paid(event)
        else:
            outcome = EventOutcome(status="ignored", event_type=event.event_type, detail="unhandled event type")

        claim.outcome = outcome.status
        claim.subscription_id = outcome.subscription_id
        await self.db.flush()

        log.info(
            "Provider event processed",
            outcome=outcome.status,
            subscription_id=outcome.subscription_id,
            detail=outcome.detail,
        )
        return outcome

    @staticmethod
    def _is_stale(record: SubscriptionRecord, occurred_at: datetime) -> bool:
        return record.last_event_at is not None and to_naive_utc(occurred_at) < record.last_event_at

    @staticmethod
    def _apply_snapshot(
        record: SubscriptionRecord,
        snapshot: SubscriptionSnapshot,
        occurred_at: datetime,
        status: Optional[str] = None,
    ) -> None:
        occurred_at = to_naive_utc(occurred_at)
        record.status = status or snapshot.status
        record.customer_id = snapshot.customer_id or record.customer_id
        record.price_id = snapshot.price_id or record.price_id
        record.cancel_at_period_end = snapshot.cancel_at_period_end
        if snapshot.current_period_start is not None:
            record.current_period_start = snapshot.current_period_start
        if snapshot.current_period_end is not None:
            record.current_period_end = snapshot.current_period_end
        if record.last_event_at is None or occurred_at > record.last_event_at:
            record.last_event_at = occurred_at
        record.updated_at = utcnow()

    async def _create_record(
        self,
        user_id: str,
        snapshot: SubscriptionSnapshot,
        occurred_at: datetime,
        status: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> Optional[SubscriptionRecord]:
        """Insert a new record; None if a concurrent event created it first."""
        record = SubscriptionRecord(
            user_id=user_id,
            external_subscription_id=snapshot.external_subscription_id,
            customer_id=snapshot.customer_id or customer_id,
            price_id=snapshot.price_id,
            status=status or snapshot.status,
            cancel_at_period_end=snapshot.cancel_at_period_end,
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.current_period_end,
            last_event_at=to_naive_utc(occurred_at),
        )
        try:
            async with self.db.begin_nested():
                self.db.add(record)
                await self.db.flush()
        except IntegrityError:
            return None
        return record

    async def _supersede_others(self, record: SubscriptionRecord) -> None:
        """Mark the user's other live subscriptions to end with their period."""
        if not record.is_active or record.cancel_at_period_end:
            return

        result = await self.db.execute(
            select(SubscriptionRecord).where(
                SubscriptionRecord.user_id == record.user_id,
                SubscriptionRecord.id != record.id,
                SubscriptionRecord.status.in_(ACTIVE_STATUSES),
                SubscriptionRecord.cancel_at_period_end.is_(False),
            )
        )
        for other in result.scalars().all():
            logger.warning(
                "User has more than one active subscription; older one set to cancel at period end",
                user_id=record.user_id,
                kept=record.external_subscription_id,
                superseded=other.external_subscription_id,
            )
            other.cancel_at_period_end = True
            other.updated_at = utcnow()
        await self.db.flush()

    async def _on_checkout_completed(self, event: CheckoutCompleted) -> EventOutcome:
        if event.subscription is None or not event.user_id:
            return EventOutcome(
                status="skipped",
                event_type=event.event_type,
                detail="checkout without subscription or user id",
            )

        snapshot = event.subscription
        record = await self.get_by_external_id(snapshot.external_subscription_id)
        if record is None:
            record = await self._create_record(
                event.user_id, snapshot, event.occurred_at, customer_id=event.customer_id
            )
            if record is None:
                record = await self.get_by_external_id(snapshot.external_subscription_id)
            else:
                await self._supersede_others(record)
                return EventOutcome(status="applied", event_type=event.event_type, subscription_id=record.id)

        if record.user_id != event.user_id:
            logger.warning(
                "Checkout user does not own subscription",
                user_id=event.user_id,
                owner=record.user_id,
                external_subscription_id=record.external_subscription_id,
            )
            return EventOutcome(
                status="skipped",
                event_type=event.event_type,
                subscription_id=record.id,
                detail="subscription belongs to another user",
            )

        if self._is_stale(record, event.occurred_at):
            return EventOutcome(status="stale", event_type=event.event_type, subscription_id=record.id)

        # A newer checkout is the only way out of the canceled state
        self._apply_snapshot(record, snapshot, event.occurred_at)
        await self.db.flush()
        await self._supersede_others(record)
        return EventOutcome(status="applied", event_type=event.event_type, subscription_id=record.id)

    async def _on_subscription_updated(self, event: SubscriptionUpdated) -> EventOutcome:
        snapshot = event.subscription
        record = await self.get_by_external_id(snapshot.external_subscription_id)

        if record is None:
            if not snapshot.user_id:
                return EventOutcome(status="skipped", event_type=event.event_type, detail="unknown subscription")
            record = await self._create_record(snapshot.user_id, snapshot, event.occurred_at)
            if record is None:
                record = await self.get_by_external_id(snapshot.external_subscription_id)
            else:
                await self._supersede_others(record)
                return EventOutcome(status="applied", event_type=event.event_type, subscription_id=record.id)

        if self._is_stale(record, event.occurred_at):
            return EventOutcome(status="stale", event_type=event.event_type, subscription_id=record.id)
        if record.status == CANCELED:
            return EventOutcome(
                status="ignored",
                event_type=event.event_type,
                subscription_id=record.id,
                detail="subscription is canceled",
            )

        self._apply_snapshot(record, snapshot, event.occurred_at)
        await self.db.flush()
        await self._supersede_others(record)
        return EventOutcome(status="applied", event_type=event.event_type, subscription_id=record.id)

    async def _on_subscription_deleted(self, event: SubscriptionDeleted) -> EventOutcome:
        snapshot = event.subscription
        record = await self.get_by_external_id(snapshot.external_subscription_id)

        if record is None:
            if not snapshot.user_id:
                return EventOutcome(status="skipped", event_type=event.event_type, detail="unknown subscription")
            # Tombstone so a late checkout event cannot bring it back
            record = await self._create_record(snapshot.user_id, snapshot, event.occurred_at, status=CANCELED)
            if record is None:
                record = await self.get_by_external_id(snapshot.external_subscription_id)
            else:
                return EventOutcome(status="applied", event_type=event.event_type, subscription_id=record.id)

        if self._is_stale(record, event.occurred_at):
            return EventOutcome(status="stale", event_type=event.event_type, subscription_id=record.id)

        self._apply_snapshot(record, snapshot, event.occurred_at, status=CANCELED)
        await self.db.flush()
        return EventOutcome(status="applied", event_type=event.event_type, subscription_id=record.id)

    async def _on_invoice_payment_failed(self, event: InvoicePaymentFailed) -> EventOutcome:
        record = None
        if event.external_subscription_id:
            record = await self.get_by_external_id(event.external_subscription_id)
        if record is None:
            return EventOutcome(status="skipped", event_type=event.event_type, detail="unknown subscription")

        if self._is_stale(record, event.occurred_at):
            return EventOutcome(status="stale", event_type=event.event_type, subscription_id=record.id)
        if record.status == CANCELED:
            return EventOutcome(
                status="ignored",
                event_type=event.event_type,
                subscription_id=record.id,
                detail="subscription is canceled",
            )

        record.status = SubscriptionStatus.PAST_DUE.value
        record.last_event_at = to_naive_utc(event.occurred_at)
        record.updated_at = utcnow()
        await self.db.flush()
        return EventOutcome(status="applied", event_type=event.event_type, subscription_id=record.id)

    async def _on_invoice_paid(self, event: InvoicePaid) -> EventOutcome:
        record = None
        if event.external_subscription_id:
            record = await self.get_by_external_id(event.external_subscription_id)
        if record is None:
            return EventOutcome(status="skipped", event_type=event.event_type, detail="unknown subscription")

        credits = credits_for_price_id(event.price_id or record.price_id)
        if credits <= 0:
            return EventOutcome(
                status="skipped",
                event_type=event.event_type,
                subscription_id=record.id,
                detail="price has no credit allowance",
            )

        # The invoice id makes the grant idempotent across invoice.paid and
        # invoice.payment_succeeded, which Stripe sends for the same invoice.
        result = await self.ledger.apply_transaction(
            record.user_id,
            credits,
            LedgerReason.SUBSCRIPTION_GRANT,
            f"invoice:{event.invoice_id}",
            description=f"Subscription credits for invoice {event.invoice_id}",
        )
        return EventOutcome(
            status="applied" if result.applied else "duplicate",
            event_type=event.event_type,
            subscription_id=record.id,
            credits_granted=credits if result.applied else 0,
        )

    # -------------------------------------------------------------------------
    # User-initiated actions
    # -------------------------------------------------------------------------

    def _require_provider(self) -> PaymentProvider:
        if self.provider is None or not self.provider.is_configured():
            raise ProviderNotConfigured("Billing is not configured")
        return self.provider

    async def cancel_subscription(self, subscription_id: str, requesting_user_id: str) -> SubscriptionRecord:
        """
        Cancel a subscription at the end of its current period.

        Raises:
            NotFound: no such subscription for ``requesting_user_id``.
            Conflict: the subscription has already ended.
            ProviderError: the provider refused or could not be reached.
        """
        record = await self.get_for_user(subscription_id, requesting_user_id)
        if record.status == CANCELED:
            raise Conflict("Subscription is already canceled")
        if record.cancel_at_period_end:
            return record

        provider = self._require_provider()
        snapshot = await provider.cancel_subscription(record.external_subscription_id)

        record.cancel_at_period_end = True
        if snapshot.current_period_end is not None:
            record.current_period_end = snapshot.current_period_end
        record.updated_at = utcnow()
        self.db.add(
            PaymentEvent(
                subscription_id=record.id,
                event_type="cancel_requested",
                event_data=json.dumps({"requested_by": requesting_user_id}),
            )
        )
        await self.db.flush()

        logger.info(
            "Subscription cancellation requested",
            user_id=requesting_user_id,
            subscription_id=record.id,
            external_subscription_id=record.external_subscription_id,
        )
        return record

    async def sync_subscription(self, subscription_id: str, requesting_user_id: str) -> SubscriptionRecord:
        """Pull the provider's current view of a subscription and store it."""
        record = await self.get_for_user(subscription_id, requesting_user_id)
        provider = self._require_provider()
        snapshot = await provider.retrieve_subscription(record.external_subscription_id)

        self._apply_snapshot(record, snapshot, utcnow())
        self.db.add(
            PaymentEvent(
                subscription_id=record.id,
                event_type="sync",
                event_data=json.dumps(dataclasses.asdict(snapshot), default=str),
            )
        )
        await self.db.flush()
        await self._supersede_others(record)

        logger.info(
            "Subscription synced from provider",
            user_id=requesting_user_id,
            subscription_id=record.id,
            status=record.status,
        )
        return record

    async def create_checkout(
        self,
        user_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Start a subscription checkout for ``user_id``.

        Raises:
            Conflict: the user already has an active or past-due subscription.
            InvalidRequest: ``price_id`` is not one of our plans.
        """
        if await self.get_active_subscription(user_id) is not None:
            raise Conflict("User already has an active subscription")
        if plan_for_price_id(price_id) is None:
            raise InvalidRequest(f"Unknown price: {price_id}")

        provider = self._require_provider()
        session = await provider.create_checkout_session(
            user_id=user_id,
            price_id=price_id,
            success_url=success_url,
            cancel_url=cancel_url,
            email=email,
        )
        logger.info("Checkout session created", user_id=user_id, price_id=price_id)
        return session
