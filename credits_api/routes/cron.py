"""
Cron Endpoints
==============

Time-triggered jobs, called by the platform scheduler. Both GET and POST are
accepted since schedulers differ in which one they send.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credits_api.cron import (
    check_ledger_consistency,
    delete_expired_api_keys,
    grant_monthly_free_credits,
    verify_cron_secret,
)
from credits_api.database import get_sessionmaker
from credits_api.models.db_models import utcnow


router = APIRouter(
    prefix="/api/cron",
    tags=["Cron"],
    dependencies=[Depends(verify_cron_secret)],
)


@router.api_route(
    "/monthly-credits",
    methods=["GET", "POST"],
    summary="Grant Monthly Credits",
    description="Grant this month's free credits to every free-tier user. Safe to repeat.",
)
async def monthly_credits(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
):
    summary = await grant_monthly_free_credits(session_factory)
    return {**summary.to_dict(), "timestamp": utcnow().isoformat()}


@router.api_route(
    "/ledger-consistency",
    methods=["GET", "POST"],
    summary="Check Ledger Consistency",
)
async def ledger_consistency(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
):
    result = await check_ledger_consistency(session_factory)
    return {**result, "timestamp": utcnow().isoformat()}


@router.api_route(
    "/expired-api-keys",
    methods=["GET", "POST"],
    summary="Delete Expired API Keys",
)
async def expired_api_keys(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_sessionmaker),
):
    result = await delete_expired_api_keys(session_factory)
    return {**result, "timestamp": utcnow().isoformat()}
