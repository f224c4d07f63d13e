"""
Database Models
===============

SQLAlchemy ORM models for persistent storage.
"""

import enum
import hashlib
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import (
    String, Integer, Float, Boolean, DateTime, Text, ForeignKey,
    Index, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column

from credits_api.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize an aware datetime to the naive UTC form used in the database."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def billing_period(now: Optional[datetime] = None) -> str:
    """Billing month key in YYYY-MM format."""
    return (now or utcnow()).strftime("%Y-%m")


def generate_id() -> str:
    return str(uuid.uuid4())


def hash_key(key: str) -> str:
    """Hash an API key for secure storage."""
    return hashlib.sha256(key.encode()).hexdigest()


class LedgerReason(str, enum.Enum):
    """Why a ledger transaction happened."""
    MONTHLY_GRANT = "monthly_grant"
    API_CALL = "api_call"
    STORAGE = "storage"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    REFUND = "refund"
    SUBSCRIPTION_GRANT = "subscription_grant"
    SIGNUP_BONUS = "signup_bonus"


class UsageService(str, enum.Enum):
    API_CALL = "api_call"
    STORAGE = "storage"


class SubscriptionStatus(str, enum.Enum):
    """Subscription states mirrored from the payment provider."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"


# Statuses that make a user a paying customer
ACTIVE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)

# Statuses shown as the current subscription; a past-due one still blocks a new checkout
CURRENT_STATUSES = ACTIVE_STATUSES + (SubscriptionStatus.PAST_DUE.value,)


class User(Base):
    """
    A user known to the billing core.

    Identities are owned by the auth provider; a row is upserted the first
    time an authenticated session is seen so the grant job can enumerate users.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    banned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<User {self.id}>"


class AccountBalance(Base):
    """
    Cached credit balance of a user.

    Only the ledger service writes this row; it always equals the sum of the
    user's ledger transactions.
    """
    __tablename__ = "account_balances"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_account_balances_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<AccountBalance {self.user_id}={self.balance}>"


class LedgerTransaction(Base):
    """
    Immutable, signed credit movement.

    ``reference_id`` is the idempotency key: a second transaction with the
    same reference is never written.
    """
    __tablename__ = "ledger_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    reference_id: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    balance_after: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_ledger_transactions_non_zero"),
        Index("idx_ledger_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<LedgerTransaction {self.reference_id} ({self.amount:+d})>"


class UsageRecord(Base):
    """
    One billable action, used to compute consumption against monthly quotas.
    """
    __tablename__ = "usage_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    service: Mapped[str] = mapped_column(String(20), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    reference_id: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    credits_charged: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_usage_user_service_period", "user_id", "service", "period"),
    )

    def __repr__(self) -> str:
        return f"<UsageRecord {self.reference_id} ({self.credits_charged} credits)>"


class SubscriptionRecord(Base):
    """
    Local mirror of a provider subscription.

    Created when a checkout completes, mutated only by subscription sync and
    never deleted.
    """
    __tablename__ = "subscription_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    external_subscription_id: Mapped[str] = mapped_column(
        String(255), unique=True, index=True, nullable=False
    )
    customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    price_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def __repr__(self) -> str:
        return f"<SubscriptionRecord {self.external_subscription_id} ({self.status})>"


class PaymentEvent(Base):
    """
    Audit log of every event applied to (or ignored for) a subscription.

    ``provider_event_id`` is unique so a redelivered webhook is recorded once.
    """
    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("subscription_records.id"), nullable=True, index=True
    )
    provider_event_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, index=True, nullable=True
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    outcome: Mapped[str] = mapped_column(String(20), default="applied", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<PaymentEvent {self.event_type} ({self.outcome})>"


class APIKey(Base):
    """
    API key used to authenticate billable calls.

    The plaintext key is only shown once on creation; we store a hash.
    """
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    hashed_key: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or utcnow())

    def __repr__(self) -> str:
        return f"<APIKey {self.id} ({self.name})>"
