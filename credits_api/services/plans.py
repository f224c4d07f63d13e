"""
Subscription Plans
==================

Plan catalogue: which provider prices exist and how many credits each paid
invoice grants.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from credits_api.config import get_settings


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    monthly_credits: int
    price_usd: float
    yearly_price_usd: Optional[float] = None
    yearly_credits: Optional[int] = None
    price_ids: Dict[str, str] = field(default_factory=dict)
    features: List[str] = field(default_factory=list)


def get_plans() -> List[Plan]:
    """Plans with provider price ids resolved from settings."""
    settings = get_settings()
    return [
        Plan(
            id="free",
            name="Free",
            monthly_credits=settings.free_monthly_credits,
            price_usd=0,
            features=[
                f"{settings.free_monthly_credits} credits per month",
                f"{settings.free_tier_quota_calls} free API calls per month",
                f"{settings.free_tier_quota_gb:g}GB storage",
            ],
        ),
        Plan(
            id="pro",
            name="Pro",
            monthly_credits=1000,
            yearly_credits=12000,
            price_usd=49,
            yearly_price_usd=499,
            price_ids={
                "monthly": settings.stripe_price_id_pro_monthly,
                "yearly": settings.stripe_price_id_pro_yearly,
            },
            features=["1,000 credits per month", "Priority support", "Team collaboration"],
        ),
        Plan(
            id="enterprise",
            name="Enterprise",
            monthly_credits=5000,
            yearly_credits=60000,
            price_usd=199,
            yearly_price_usd=1999,
            price_ids={
                "monthly": settings.stripe_price_id_enterprise_monthly,
                "yearly": settings.stripe_price_id_enterprise_yearly,
            },
            features=["5,000 credits per month", "24/7 dedicated support", "SLA guarantee"],
        ),
    ]


def plan_for_price_id(price_id: Optional[str]) -> Optional[Plan]:
    if not price_id:
        return None
    for plan in get_plans():
        if price_id in plan.price_ids.values():
            return plan
    return None


def credits_for_price_id(price_id: Optional[str]) -> int:
    """Credits granted for one paid invoice of ``price_id`` (0 if unknown)."""
    plan = plan_for_price_id(price_id)
    if plan is None:
        return 0
    if plan.yearly_credits and price_id == plan.price_ids.get("yearly"):
        return plan.yearly_credits
    return plan.monthly_credits
