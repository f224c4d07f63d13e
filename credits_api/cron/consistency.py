"""Ledger consistency check and API key expiry."""

from typing import Any, Dict

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credits_api.services.key_service import APIKeyService
from credits_api.services.ledger import LedgerService

logger = structlog.get_logger(__name__)


async def check_ledger_consistency(session_factory: async_sessionmaker[AsyncSession]) -> Dict[str, Any]:
    """Compare every cached balance with the sum of its ledger transactions."""
    async with session_factory() as db:
        mismatches = await LedgerService(db).find_inconsistencies()

    for mismatch in mismatches:
        logger.error(
            "Balance does not match ledger",
            user_id=mismatch.user_id,
            balance=mismatch.balance,
            ledger_total=mismatch.ledger_total,
        )
    if not mismatches:
        logger.info("Ledger is consistent")

    return {
        "consistent": not mismatches,
        "mismatches": [
            {"user_id": m.user_id, "balance": m.balance, "ledger_total": m.ledger_total}
            for m in mismatches
        ],
    }


async def delete_expired_api_keys(session_factory: async_sessionmaker[AsyncSession]) -> Dict[str, Any]:
    async with session_factory() as db:
        deleted = await APIKeyService(db).delete_expired()
        await db.commit()
    return {"deleted": deleted}
