"""
Credits Endpoints
=================

Balance, ledger history and quota usage for the signed-in user, plus
administrative adjustments.
"""

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from credits_api.auth import AuthContext, get_current_user, require_admin
from credits_api.database import get_db
from credits_api.models.db_models import LedgerReason, generate_id
from credits_api.models.schemas import (
    BalanceResponse,
    CreditAdjustmentRequest,
    CreditHistoryResponse,
    LedgerEntry,
    LedgerResultResponse,
    QuotaUsageResponse,
)
from credits_api.services.consumption import ConsumptionService
from credits_api.services.ledger import LedgerService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/v1/credits", tags=["Credits"])


async def get_ledger_service(db: AsyncSession = Depends(get_db)) -> LedgerService:
    return LedgerService(db)


@router.get("/balance", response_model=BalanceResponse, summary="Get Balance")
async def get_balance(
    user: AuthContext = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger_service),
) -> BalanceResponse:
    return BalanceResponse(user_id=user.user_id, balance=await ledger.get_balance(user.user_id))


@router.get(
    "/history",
    response_model=CreditHistoryResponse,
    summary="Get Credit History",
    description="Ledger transactions of the caller, newest first.",
)
async def get_history(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: AuthContext = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger_service),
) -> CreditHistoryResponse:
    entries = await ledger.get_history(user.user_id, limit=limit, offset=offset)
    return CreditHistoryResponse(
        entries=[LedgerEntry.model_validate(e) for e in entries],
        limit=limit,
        offset=offset,
    )


@router.get(
    "/quota",
    response_model=QuotaUsageResponse,
    summary="Get Quota Usage",
    description="Usage against the free quota in the current billing month.",
)
async def get_quota(
    user: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> QuotaUsageResponse:
    usage = await ConsumptionService(db).get_quota_usage(user.user_id)
    return QuotaUsageResponse(**usage)


@router.post(
    "/adjust",
    response_model=LedgerResultResponse,
    summary="Adjust Credits",
    description="Record a manual credit or debit on a user's ledger (admin only).",
    responses={402: {"description": "Debit exceeds the user's balance"}},
)
async def adjust_credits(
    body: CreditAdjustmentRequest,
    admin: AuthContext = Depends(require_admin),
    ledger: LedgerService = Depends(get_ledger_service),
) -> LedgerResultResponse:
    reference_id = body.reference_id or f"adjust:{generate_id()}"
    result = await ledger.apply_transaction(
        body.user_id,
        body.amount,
        LedgerReason(body.reason.value),
        reference_id,
        description=body.description or f"Adjustment by {admin.user_id}",
    )
    logger.info(
        "Credits adjusted",
        admin_id=admin.user_id,
        user_id=body.user_id,
        amount=body.amount,
        reference_id=reference_id,
        applied=result.applied,
    )
    return LedgerResultResponse(
        balance=result.balance,
        applied=result.applied,
        transaction=LedgerEntry.model_validate(result.transaction) if result.transaction else None,
    )
