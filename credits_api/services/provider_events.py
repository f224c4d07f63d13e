"""
Provider Events
===============

Normalized payment provider events.

Raw Stripe payloads are translated here, at the boundary, into a closed set
of event types. Subscription sync only ever sees these types.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

from credits_api.errors import InvalidWebhookEvent

# Metadata key our checkout sessions and subscriptions carry the user id in
USER_ID_METADATA_KEY = "userId"


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """State of one provider subscription at the time of an event."""
    external_subscription_id: str
    status: str
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    cancel_at_period_end: bool = False
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    occurred_at: datetime
    user_id: Optional[str]
    subscription: Optional[SubscriptionSnapshot]
    customer_id: Optional[str] = None
    session_id: Optional[str] = None
    event_type: str = "checkout.session.completed"


@dataclass(frozen=True)
class SubscriptionUpdated:
    event_id: str
    occurred_at: datetime
    subscription: SubscriptionSnapshot
    event_type: str = "customer.subscription.updated"


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    occurred_at: datetime
    subscription: SubscriptionSnapshot
    event_type: str = "customer.subscription.deleted"


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_id: str
    occurred_at: datetime
    invoice_id: Optional[str]
    external_subscription_id: Optional[str]
    event_type: str = "invoice.payment_failed"


@dataclass(frozen=True)
class InvoicePaid:
    event_id: str
    occurred_at: datetime
    invoice_id: str
    external_subscription_id: Optional[str]
    price_id: Optional[str] = None
    event_type: str = "invoice.paid"


@dataclass(frozen=True)
class UnrecognizedEvent:
    event_id: str
    occurred_at: datetime
    event_type: str


ProviderEvent = Union[
    CheckoutCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentFailed,
    InvoicePaid,
    UnrecognizedEvent,
]


def _timestamp(value: Any) -> Optional[datetime]:
    """Unix seconds to a naive UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, Mapping):
        return value.get("id")
    return str(value)


def _first_item(subscription: Mapping[str, Any]) -> Mapping[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def snapshot_from_subscription(subscription: Mapping[str, Any]) -> SubscriptionSnapshot:
    """
    Build a snapshot from a Stripe subscription object.

    Newer API versions moved the billing period onto the subscription items,
    so the first item is used when the subscription itself has none.
    """
    item = _first_item(subscription)
    metadata = subscription.get("metadata") or {}

    period_start = subscription.get("current_period_start") or item.get("current_period_start")
    period_end = subscription.get("current_period_end") or item.get("current_period_end")

    return SubscriptionSnapshot(
        external_subscription_id=subscription["id"],
        status=subscription.get("status") or "incomplete",
        customer_id=_id_of(subscription.get("customer")),
        price_id=_id_of((item.get("price") or {})),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        current_period_start=_timestamp(period_start),
        current_period_end=_timestamp(period_end),
        user_id=metadata.get(USER_ID_METADATA_KEY),
    )


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    subscription_id = _id_of(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return _id_of(details.get("subscription"))


def _invoice_price_id(invoice: Mapping[str, Any]) -> Optional[str]:
    lines = (invoice.get("lines") or {}).get("data") or []
    if not lines:
        return None
    line = lines[0]
    price = line.get("price")
    if price:
        return _id_of(price)
    pricing = (line.get("pricing") or {}).get("price_details") or {}
    return _id_of(pricing.get("price"))


def from_stripe_payload(
    event: Mapping[str, Any],
    subscription: Optional[Mapping[str, Any]] = None,
) -> ProviderEvent:
    """
    Translate a verified Stripe event into a normalized event.

    ``subscription`` is the retrieved subscription object for checkout events,
    whose payload only carries the subscription id.

    Raises:
        InvalidWebhookEvent: the event carries no id to deduplicate on.
    """
    event_id = event.get("id")
    if not event_id:
        raise InvalidWebhookEvent("Event has no id")
    event_type = event.get("type") or ""
    occurred_at = _timestamp(event.get("created")) or datetime.now(timezone.utc).replace(tzinfo=None)
    obj: Dict[str, Any] = dict((event.get("data") or {}).get("object") or {})

    if event_type == "checkout.session.completed":
        if obj.get("mode") not in (None, "subscription"):
            return UnrecognizedEvent(event_id=event_id, occurred_at=occurred_at, event_type=event_type)

        metadata = obj.get("metadata") or {}
        snapshot = snapshot_from_subscription(subscription) if subscription else None
        user_id = (
            metadata.get(USER_ID_METADATA_KEY)
            or obj.get("client_reference_id")
            or (snapshot.user_id if snapshot else None)
        )
        return CheckoutCompleted(
            event_id=event_id,
            occurred_at=occurred_at,
            user_id=user_id,
            subscription=snapshot,
            customer_id=_id_of(obj.get("customer")),
            session_id=obj.get("id"),
        )

    if event_type in ("customer.subscription.created", "customer.subscription.updated"):
        return SubscriptionUpdated(
            event_id=event_id,
            occurred_at=occurred_at,
            subscription=snapshot_from_subscription(obj),
            event_type=event_type,
        )

    if event_type == "customer.subscription.deleted":
        return SubscriptionDeleted(
            event_id=event_id,
            occurred_at=occurred_at,
            subscription=snapshot_from_subscription(obj),
        )

    if event_type == "invoice.payment_failed":
        return InvoicePaymentFailed(
            event_id=event_id,
            occurred_at=occurred_at,
            invoice_id=obj.get("id"),
            external_subscription_id=_invoice_subscription_id(obj),
        )

    if event_type in ("invoice.paid", "invoice.payment_succeeded") and obj.get("id"):
        return InvoicePaid(
            event_id=event_id,
            occurred_at=occurred_at,
            invoice_id=obj["id"],
            external_subscription_id=_invoice_subscription_id(obj),
            price_id=_invoice_price_id(obj),
            event_type=event_type,
        )

    return UnrecognizedEvent(event_id=event_id, occurred_at=occurred_at, event_type=event_type)


def subscription_id_of(event: ProviderEvent) -> Optional[str]:
    """External subscription id an event is about, if any."""
    if isinstance(event, (SubscriptionUpdated, SubscriptionDeleted)):
        return event.subscription.external_subscription_id
    if isinstance(event, CheckoutCompleted):
        return event.subscription.external_subscription_id if event.subscription else None
    if isinstance(event, (InvoicePaymentFailed, InvoicePaid)):
        return event.external_subscription_id
    return None
