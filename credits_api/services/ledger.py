"""
Ledger Service
==============

The credit ledger: an append-only log of signed credit movements plus a
cached per-user balance that is only ever changed together with a ledger row.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Union

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from credits_api.errors import Conflict, InsufficientBalance
from credits_api.models.db_models import (
    AccountBalance,
    LedgerReason,
    LedgerTransaction,
    utcnow,
)

logger = structlog.get_logger(__name__)


@dataclass
class LedgerResult:
    """Outcome of ``LedgerService.apply_transaction``."""
    balance: int
    applied: bool
    transaction: Optional[LedgerTransaction] = None


@dataclass
class BalanceMismatch:
    """An account whose cached balance differs from its ledger total."""
    user_id: str
    balance: int
    ledger_total: int


class LedgerService:
    """Service for reading and writing the credit ledger."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_balance(self, user_id: str) -> int:
        """Current balance of a user (0 when the user has no account yet)."""
        result = await self.db.execute(
            select(AccountBalance.balance).where(AccountBalance.user_id == user_id)
        )
        return int(result.scalar_one_or_none() or 0)

    async def get_by_reference(self, reference_id: str) -> Optional[LedgerTransaction]:
        result = await self.db.execute(
            select(LedgerTransaction).where(LedgerTransaction.reference_id == reference_id)
        )
        return result.scalar_one_or_none()

    async def _ensure_account(self, user_id: str) -> None:
        """Create the balance row for a user if it does not exist yet."""
        result = await self.db.execute(
            select(AccountBalance.user_id).where(AccountBalance.user_id == user_id)
        )
        if result.scalar_one_or_none() is not None:
            return

        try:
            async with self.db.begin_nested():
                self.db.add(AccountBalance(user_id=user_id, balance=0))
        except IntegrityError:
            # Created by a concurrent transaction; the row is what we wanted.
            logger.debug("Account created concurrently", user_id=user_id)

    async def lock_account(self, user_id: str) -> int:
        """
        Lock the user's balance row until the enclosing transaction ends.

        Creates the row if needed. Callers that read before they write, like
        the free-quota check, take this lock first so concurrent requests of
        the same user run one after the other. Returns the current balance.
        """
        await self._ensure_account(user_id)
        result = await self.db.execute(
            select(AccountBalance.balance)
            .where(AccountBalance.user_id == user_id)
            .with_for_update()
        )
        return int(result.scalar_one())

    @staticmethod
    def _check_owner(user_id: str, reference_id: str, existing: LedgerTransaction) -> None:
        """A reference id replays only for the account that first used it."""
        if existing.user_id != user_id:
            logger.warning(
                "Ledger reference belongs to another account",
                user_id=user_id,
                owner=existing.user_id,
                reference_id=reference_id,
            )
            raise Conflict("Reference id is already used by another account")

    async def apply_transaction(
        self,
        user_id: str,
        amount: int,
        reason: Union[LedgerReason, str],
        reference_id: str,
        description: Optional[str] = None,
    ) -> LedgerResult:
        """
        Append a ledger transaction and move the balance by ``amount``.

        Runs inside a savepoint: the transaction row and the balance update
        either both happen or neither does. A transaction whose
        ``reference_id`` was already applied is a no-op returning
        ``applied=False``.

        Raises:
            InsufficientBalance: if a debit would make the balance negative.
                Nothing is written in that case.
            Conflict: ``reference_id`` was already used for another user.
        """
        if amount == 0:
            raise ValueError("Amount must be non-zero")
        reason = LedgerReason(reason).value

        existing = await self.get_by_reference(reference_id)
        if existing is not None:
            self._check_owner(user_id, reference_id, existing)
            return LedgerResult(
                balance=await self.get_balance(user_id),
                applied=False,
                transaction=existing,
            )

        transaction = LedgerTransaction(
            user_id=user_id,
            amount=amount,
            reason=reason,
            reference_id=reference_id,
            description=description,
        )

        try:
            async with self.db.begin_nested():
                # A debit needs an existing account; a failed one leaves no row behind
                if amount > 0:
                    await self._ensure_account(user_id)
                self.db.add(transaction)
                await self.db.flush()

                # Conditional update: the store serialises concurrent debits
                # and refuses any that would go below zero.
                result = await self.db.execute(
                    update(AccountBalance)
                    .where(
                        AccountBalance.user_id == user_id,
                        AccountBalance.balance + amount >= 0,
                    )
                    .values(balance=AccountBalance.balance + amount, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise InsufficientBalance(
                        user_id,
                        required=-amount,
                        available=await self.get_balance(user_id),
                    )

                transaction.balance_after = await self.get_balance(user_id)
        except IntegrityError:
            duplicate = await self.get_by_reference(reference_id)
            if duplicate is None:
                raise
            self._check_owner(user_id, reference_id, duplicate)
            logger.info(
                "Duplicate ledger reference ignored",
                user_id=user_id,
                reference_id=reference_id,
            )
            return LedgerResult(
                balance=await self.get_balance(user_id),
                applied=False,
                transaction=duplicate,
            )

        logger.info(
            "Ledger transaction applied",
            user_id=user_id,
            amount=amount,
            reason=reason,
            reference_id=reference_id,
            balance=transaction.balance_after,
        )
        return LedgerResult(
            balance=transaction.balance_after,
            applied=True,
            transaction=transaction,
        )

    async def get_history(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> List[LedgerTransaction]:
        """Ledger transactions of a user, newest first."""
        result = await self.db.execute(
            select(LedgerTransaction)
            .where(LedgerTransaction.user_id == user_id)
            .order_by(LedgerTransaction.created_at.desc(), LedgerTransaction.id)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def find_inconsistencies(self) -> List[BalanceMismatch]:
        """
        Check that every cached balance equals the sum of its ledger rows.

        Returns the accounts that violate it; an empty list means the ledger
        is consistent.
        """
        balances_result = await self.db.execute(
            select(AccountBalance.user_id, AccountBalance.balance)
        )
        balances: Dict[str, int] = {row[0]: int(row[1]) for row in balances_result.all()}

        totals_result = await self.db.execute(
            select(LedgerTransaction.user_id, func.sum(LedgerTransaction.amount))
            .group_by(LedgerTransaction.user_id)
        )
        totals: Dict[str, int] = {row[0]: int(row[1] or 0) for row in totals_result.all()}

        mismatches = []
        for user_id in sorted(set(balances) | set(totals)):
            balance = balances.get(user_id, 0)
            total = totals.get(user_id, 0)
            if balance != total:
                mismatches.append(BalanceMismatch(user_id=user_id, balance=balance, ledger_total=total))

        return mismatches
