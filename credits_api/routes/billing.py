"""
Billing Endpoints
=================

Subscription checkout, cancellation and the Stripe webhook.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from credits_api.auth import AuthContext, get_current_user
from credits_api.database import get_db
from credits_api.models.db_models import SubscriptionRecord
from credits_api.models.schemas import (
    BillingInfoResponse,
    CheckoutRequest,
    CheckoutResponse,
    SubscriptionInfo,
)
from credits_api.services.plans import get_plans, plan_for_price_id
from credits_api.services.stripe_service import PaymentProvider, get_payment_provider
from credits_api.services.subscriptions import SubscriptionService


router = APIRouter(prefix="/v1/billing", tags=["Billing"])


async def get_subscription_service(
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> SubscriptionService:
    """Get subscription service instance."""
    return SubscriptionService(db, provider)


def _subscription_info(record: SubscriptionRecord) -> SubscriptionInfo:
    info = SubscriptionInfo.model_validate(record)
    plan = plan_for_price_id(record.price_id)
    info.plan = plan.id if plan else None
    return info


@router.get(
    "",
    response_model=BillingInfoResponse,
    summary="Get Billing Info",
    description="Balance, active subscription and subscription history of the caller.",
)
async def get_billing_info(
    user: AuthContext = Depends(get_current_user),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> BillingInfoResponse:
    info = await subscriptions.get_billing_info(user.user_id)
    active = info["active_subscription"]
    return BillingInfoResponse(
        balance=info["balance"],
        active_subscription=_subscription_info(active) if active else None,
        subscriptions=[_subscription_info(s) for s in info["subscriptions"]],
    )


@router.get(
    "/plans",
    summary="Get Available Plans",
    description="Get the subscription plans and their credit allowances.",
)
async def get_available_plans():
    return {
        "plans": [
            {
                "id": plan.id,
                "name": plan.name,
                "monthly_credits": plan.monthly_credits,
                "yearly_credits": plan.yearly_credits,
                "price_usd": plan.price_usd,
                "yearly_price_usd": plan.yearly_price_usd,
                "price_ids": plan.price_ids,
                "features": plan.features,
            }
            for plan in get_plans()
        ]
    }


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    summary="Create Checkout Session",
    description="Create a Stripe Checkout session for a subscription plan.",
)
async def create_checkout(
    body: CheckoutRequest,
    user: AuthContext = Depends(get_current_user),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> CheckoutResponse:
    """
    Create a Stripe Checkout session.

    Returns a URL to redirect the user to for payment.
    """
    result = await subscriptions.create_checkout(
        user_id=user.user_id,
        price_id=body.price_id,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        email=user.email,
    )
    return CheckoutResponse(checkout_url=result["checkout_url"], session_id=result["session_id"])


@router.post(
    "/subscriptions/{subscription_id}/cancel",
    response_model=SubscriptionInfo,
    summary="Cancel Subscription",
    description="Cancel one of the caller's subscriptions at the end of the current period.",
)
async def cancel_subscription(
    subscription_id: str,
    user: AuthContext = Depends(get_current_user),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionInfo:
    record = await subscriptions.cancel_subscription(subscription_id, user.user_id)
    return _subscription_info(record)


@router.post(
    "/subscriptions/{subscription_id}/sync",
    response_model=SubscriptionInfo,
    summary="Sync Subscription",
    description="Refresh a subscription from the payment provider.",
)
async def sync_subscription(
    subscription_id: str,
    user: AuthContext = Depends(get_current_user),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionInfo:
    record = await subscriptions.sync_subscription(subscription_id, user.user_id)
    return _subscription_info(record)


@router.post(
    "/webhook",
    summary="Stripe Webhook",
    description="Handle Stripe webhook events.",
    include_in_schema=False,  # Hide from docs
)
async def handle_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="stripe-signature"),
    provider: PaymentProvider = Depends(get_payment_provider),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    """
    Handle Stripe webhook events.

    A failure after the event is claimed rolls the whole request back, so
    Stripe's redelivery gets a clean second attempt.
    """
    payload = await request.body()
    event = await provider.parse_webhook(payload, stripe_signature)
    outcome = await subscriptions.apply_provider_event(event)
    return {"received": True, **outcome.to_dict()}
