"""
Ledger Service - Append-only credit ledger per user

Every balance change is a new CreditTransaction row. The current balance is
the balance_after of the user's latest row, so the ledger is its own source
of truth and can be re-verified by folding over the whole chain.

Appends lock the owning User row, which serialises concurrent appends for
one account; the (user_id, sequence) unique constraint backs that up at the
storage level. None of these methods commit: callers run them inside their
own unit of work.
"""
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    InsufficientFundsError,
    InvalidAmountError,
    InvariantViolationError,
    UserNotFoundError,
)
from app.core.logging import get_logger
from app.core.money import quantize_money
from app.db.models.credit_transaction import CreditTransaction, CreditTransactionType
from app.db.models.user import User

logger = get_logger(__name__)

ZERO = Decimal("0.00")

# Sign each entry type must carry
_CREDIT_TYPES = {CreditTransactionType.PURCHASE, CreditTransactionType.REFUND}
_DEBIT_TYPES = {CreditTransactionType.PAYMENT}


class LedgerService:
    """Reads and appends credit ledger rows"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _lock_account(self, user_id: int) -> User:
        result = await self.db.execute(
            select(User)
            .where(User.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        user = result.scalar_one_or_none()
        if not user:
            raise UserNotFoundError(user_id)
        return user

    async def _latest_entry(self, user_id: int) -> Optional[CreditTransaction]:
        result = await self.db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.sequence.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_balance(self, user_id: int) -> Decimal:
        """balance_after of the latest entry, or zero for an empty ledger"""
        latest = await self._latest_entry(user_id)
        return latest.balance_after if latest else ZERO

    async def append(
        self,
        user_id: int,
        amount: Decimal,
        transaction_type: CreditTransactionType,
        description: str,
        booking_id: Optional[int] = None,
        payment_id: Optional[int] = None,
    ) -> CreditTransaction:
        """
        Append one signed entry to the user's chain.

        Raises:
            InvalidAmountError: zero amount
            InvariantViolationError: sign does not match the entry type
            InsufficientFundsError: a debit would take the balance below zero
        """
        amount = quantize_money(amount)
        if amount == 0:
            raise InvalidAmountError("Ledger amount must be non-zero")
        if (transaction_type in _CREDIT_TYPES and amount < 0) or (
            transaction_type in _DEBIT_TYPES and amount > 0
        ):
            raise InvariantViolationError(
                "Ledger entry sign does not match its type",
                details={"transaction_type": transaction_type.value, "amount": str(amount)},
            )

        await self._lock_account(user_id)
        latest = await self._latest_entry(user_id)
        balance_before = latest.balance_after if latest else ZERO
        balance_after = balance_before + amount

        if balance_after < 0:
            logger.warning(
                "Ledger debit rejected: insufficient funds",
                extra_data={
                    "user_id": user_id,
                    "balance": str(balance_before),
                    "amount": str(amount),
                },
            )
            raise InsufficientFundsError(user_id, balance_before, -amount)

        entry = CreditTransaction(
            user_id=user_id,
            sequence=(latest.sequence + 1) if latest else 1,
            amount=amount,
            transaction_type=transaction_type,
            balance_before=balance_before,
            balance_after=balance_after,
            description=description,
            booking_id=booking_id,
            payment_id=payment_id,
        )
        self.db.add(entry)
        await self.db.flush()

        logger.info(
            "Ledger entry appended",
            extra_data={
                "user_id": user_id,
                "credit_transaction_id": entry.id,
                "sequence": entry.sequence,
                "transaction_type": transaction_type.value,
                "amount": str(amount),
                "balance_after": str(balance_after),
                "booking_id": booking_id,
                "payment_id": payment_id,
            },
        )
        return entry

    async def debit(
        self,
        user_id: int,
        amount: Decimal,
        description: str,
        booking_id: Optional[int] = None,
        payment_id: Optional[int] = None,
    ) -> CreditTransaction:
        """Spend ``amount`` (positive) from the balance"""
        return await self.append(
            user_id,
            -quantize_money(amount),
            CreditTransactionType.PAYMENT,
            description,
            booking_id=booking_id,
            payment_id=payment_id,
        )

    async def credit(
        self,
        user_id: int,
        amount: Decimal,
        transaction_type: CreditTransactionType,
        description: str,
        booking_id: Optional[int] = None,
        payment_id: Optional[int] = None,
    ) -> CreditTransaction:
        """Add ``amount`` (positive) as a purchase or refund"""
        return await self.append(
            user_id,
            quantize_money(amount),
            transaction_type,
            description,
            booking_id=booking_id,
            payment_id=payment_id,
        )

    async def get_history(
        self,
        user_id: int,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CreditTransaction]:
        """Newest first"""
        result = await self.db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.sequence.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def verify_account(self, user_id: int) -> Decimal:
        """
        Fold over the whole chain and check every link.

        Returns the verified balance. Raises InvariantViolationError when a
        sequence gap, a broken balance link or a bad row sum is found.
        """
        result = await self.db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.sequence.asc())
        )
        balance = ZERO
        expected_sequence = 1
        for entry in result.scalars():
            problem = None
            if entry.sequence != expected_sequence:
                problem = "sequence gap"
            elif entry.balance_before != balance:
                problem = "balance_before does not match previous balance_after"
            elif entry.balance_after != entry.balance_before + entry.amount:
                problem = "balance_after != balance_before + amount"
            elif entry.balance_after < 0:
                problem = "negative balance"

            if problem:
                details = {
                    "user_id": user_id,
                    "credit_transaction_id": entry.id,
                    "sequence": entry.sequence,
                    "problem": problem,
                }
                logger.critical("Credit ledger chain is inconsistent", extra_data=details)
                raise InvariantViolationError("Credit ledger chain is inconsistent", details=details)

            balance = entry.balance_after
            expected_sequence += 1

        return balance
