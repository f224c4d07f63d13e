"""
Usage Endpoints
===============

Billable-action accounting for API key holders.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from credits_api.auth import get_api_key_user
from credits_api.config import get_settings
from credits_api.database import get_db
from credits_api.models.db_models import APIKey
from credits_api.models.schemas import (
    ApiCallChargeRequest,
    BalanceResponse,
    ChargeResponse,
    StorageChargeRequest,
)
from credits_api.rate_limit import get_rate_limit_string, limiter
from credits_api.services.consumption import ChargeResult, ConsumptionService
from credits_api.services.ledger import LedgerService
from credits_api.services.plans import get_plans


router = APIRouter(prefix="/v1/usage", tags=["Usage"])


async def get_consumption_service(db: AsyncSession = Depends(get_db)) -> ConsumptionService:
    return ConsumptionService(db)


def _charge_response(request_id: str, result: ChargeResult) -> ChargeResponse:
    return ChargeResponse(
        request_id=request_id,
        reference_id=result.reference_id,
        charged=result.charged,
        within_quota=result.within_quota,
        applied=result.applied,
        balance=result.balance,
        usage_this_period=result.usage_this_period,
        quota=result.quota,
    )


@router.post(
    "/api-call",
    response_model=ChargeResponse,
    summary="Charge API Call",
    description="Account for a billable API call. Retrying with the same request_id is free.",
    responses={402: {"description": "Insufficient credits"}},
)
@limiter.limit(get_rate_limit_string())
async def charge_api_call(
    request: Request,
    body: ApiCallChargeRequest,
    api_key: APIKey = Depends(get_api_key_user),
    consumption: ConsumptionService = Depends(get_consumption_service),
) -> ChargeResponse:
    result = await consumption.charge_for_api_call(
        user_id=api_key.user_id,
        request_id=body.request_id,
        calls=body.calls,
    )
    return _charge_response(body.request_id, result)


@router.post(
    "/storage",
    response_model=ChargeResponse,
    summary="Charge Storage",
    description="Account for stored data in GB-months.",
    responses={402: {"description": "Insufficient credits"}},
)
@limiter.limit(get_rate_limit_string())
async def charge_storage(
    request: Request,
    body: StorageChargeRequest,
    api_key: APIKey = Depends(get_api_key_user),
    consumption: ConsumptionService = Depends(get_consumption_service),
) -> ChargeResponse:
    result = await consumption.charge_for_storage(
        user_id=api_key.user_id,
        gigabyte_months=body.gigabyte_months,
        request_id=body.request_id,
    )
    return _charge_response(body.request_id, result)


@router.get(
    "/balance",
    response_model=BalanceResponse,
    summary="Get Balance",
    description="Credit balance of the API key's owner.",
)
async def get_balance(
    api_key: APIKey = Depends(get_api_key_user),
    db: AsyncSession = Depends(get_db),
) -> BalanceResponse:
    balance = await LedgerService(db).get_balance(api_key.user_id)
    return BalanceResponse(user_id=api_key.user_id, balance=balance)


@router.get(
    "/pricing",
    summary="Get Pricing Information",
    description="Credit costs, free quotas and subscription plans.",
)
async def get_pricing():
    settings = get_settings()
    return {
        "rates": {
            "api_call": settings.credits_cost_per_call,
            "storage_gb_month": settings.credits_cost_per_gb_month,
        },
        "free_quota": {
            "free_tier": {
                "api_calls": settings.free_tier_quota_calls,
                "storage_gb_months": settings.free_tier_quota_gb,
            },
            "paid": {
                "api_calls": settings.paid_free_quota_calls,
                "storage_gb_months": settings.paid_free_quota_gb,
            },
        },
        "plans": [
            {
                "id": plan.id,
                "name": plan.name,
                "monthly_credits": plan.monthly_credits,
                "price_usd": plan.price_usd,
                "yearly_price_usd": plan.yearly_price_usd,
                "features": plan.features,
            }
            for plan in get_plans()
        ],
        "notes": [
            "All prices in USD",
            "Actions beyond the monthly free quota are charged in full",
            f"Free-tier users receive {settings.free_monthly_credits} credits each month",
        ],
    }
