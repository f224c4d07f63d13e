"""
Stripe Payment Provider
=======================

The payment provider seen by subscription sync, and its Stripe implementation.
"""

import asyncio
import json
from typing import Any, Dict, Optional, Protocol

import stripe
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from credits_api.config import Settings, get_settings
from credits_api.errors import InvalidWebhookEvent, ProviderError, ProviderNotConfigured
from credits_api.services.provider_events import (
    USER_ID_METADATA_KEY,
    CheckoutCompleted,
    ProviderEvent,
    SubscriptionSnapshot,
    from_stripe_payload,
    snapshot_from_subscription,
)

logger = structlog.get_logger(__name__)

# Errors worth retrying for idempotent calls
TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


class PaymentProvider(Protocol):
    """What subscription sync needs from a payment provider."""

    def is_configured(self) -> bool: ...

    async def parse_webhook(self, payload: bytes, signature: Optional[str]) -> ProviderEvent: ...

    async def create_checkout_session(
        self,
        user_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        email: Optional[str] = None,
    ) -> Dict[str, Any]: ...

    async def cancel_subscription(self, external_subscription_id: str) -> SubscriptionSnapshot: ...

    async def retrieve_subscription(self, external_subscription_id: str) -> SubscriptionSnapshot: ...


class StripeProvider:
    """Payment provider backed by the Stripe API."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def is_configured(self) -> bool:
        """Check if Stripe is properly configured."""
        return bool(self.settings.stripe_secret_key)

    def _require_configured(self) -> None:
        if not self.is_configured():
            raise ProviderNotConfigured("Billing is not configured")

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.settings.provider_max_attempts),
            wait=wait_exponential(multiplier=self.settings.provider_backoff_seconds, max=10),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            reraise=True,
        )

    async def _call_with_retry(self, operation: str, func, *args, **kwargs):
        """Run a blocking, idempotent Stripe call with bounded backoff."""
        try:
            async for attempt in self._retrying():
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.info(
                            "Retrying Stripe call",
                            operation=operation,
                            attempt=attempt.retry_state.attempt_number,
                        )
                    return await asyncio.to_thread(func, *args, **kwargs)
        except stripe.StripeError as exc:
            logger.error("Stripe call failed", operation=operation, error=str(exc))
            raise ProviderError(f"Payment provider call failed: {operation}") from exc

    async def parse_webhook(self, payload: bytes, signature: Optional[str]) -> ProviderEvent:
        """
        Verify a webhook delivery and normalize it.

        Checkout events only carry the subscription id, so the subscription
        is retrieved to complete the event.

        Raises:
            InvalidWebhookEvent: missing or bad signature, or malformed payload.
        """
        if not self.settings.stripe_webhook_secret:
            raise ProviderNotConfigured("Webhook secret is not configured")
        if not signature:
            raise InvalidWebhookEvent("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(payload, signature, self.settings.stripe_webhook_secret)
        except ValueError as exc:
            raise InvalidWebhookEvent("Invalid payload") from exc
        except stripe.SignatureVerificationError as exc:
            raise InvalidWebhookEvent("Invalid signature") from exc

        raw = json.loads(payload)
        event = from_stripe_payload(raw)

        if isinstance(event, CheckoutCompleted):
            session = raw["data"]["object"]
            subscription_id = session.get("subscription")
            if isinstance(subscription_id, dict):
                subscription_id = subscription_id.get("id")
            if subscription_id:
                subscription = await self._retrieve_raw(subscription_id)
                event = from_stripe_payload(raw, subscription=subscription)

        return event

    async def _retrieve_raw(self, external_subscription_id: str) -> Dict[str, Any]:
        self._require_configured()
        subscription = await self._call_with_retry(
            "retrieve_subscription",
            stripe.Subscription.retrieve,
            external_subscription_id,
            api_key=self.settings.stripe_secret_key,
        )
        return subscription.to_dict()

    async def retrieve_subscription(self, external_subscription_id: str) -> SubscriptionSnapshot:
        return snapshot_from_subscription(await self._retrieve_raw(external_subscription_id))

    async def cancel_subscription(self, external_subscription_id: str) -> SubscriptionSnapshot:
        """Cancel at the end of the current period. Safe to repeat."""
        self._require_configured()
        subscription = await self._call_with_retry(
            "cancel_subscription",
            stripe.Subscription.modify,
            external_subscription_id,
            cancel_at_period_end=True,
            api_key=self.settings.stripe_secret_key,
        )
        return snapshot_from_subscription(subscription.to_dict())

    async def create_checkout_session(
        self,
        user_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a subscription checkout session.

        Not retried: a repeated call would open a second session.
        """
        self._require_configured()
        metadata = {USER_ID_METADATA_KEY: user_id}
        params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "client_reference_id": user_id,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if email:
            params["customer_email"] = email

        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=self.settings.stripe_secret_key,
                **params,
            )
        except stripe.StripeError as exc:
            logger.error("Checkout session creation failed", user_id=user_id, error=str(exc))
            raise ProviderError("Could not create checkout session") from exc

        return {
            "checkout_url": session.url,
            "session_id": session.id,
        }


def get_payment_provider() -> PaymentProvider:
    """FastAPI dependency returning the configured payment provider."""
    return StripeProvider()
