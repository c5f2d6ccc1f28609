"""
Credit Transaction Model - Append-only credit ledger
"""
import enum
from sqlalchemy import (
    Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey,
    UniqueConstraint, event,
)
from sqlalchemy.orm import object_session

from app.core.clock import utcnow
from app.core.exceptions import InvariantViolationError
from app.db.database import Base


class CreditTransactionType(str, enum.Enum):
    PURCHASE = "purchase"
    PAYMENT = "payment"
    REFUND = "refund"


class CreditTransaction(Base):
    """
    One ledger row per balance change.

    Per user, rows form a chain ordered by ``sequence``: each row's
    balance_before equals the previous row's balance_after and
    balance_after = balance_before + amount. Rows are never updated or
    deleted; a correction is a new row.
    """

    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)

    # Signed: positive adds credit, negative spends it
    amount = Column(Numeric(12, 2), nullable=False)
    transaction_type = Column(
        SQLEnum(
            CreditTransactionType,
            name="credit_transaction_type",
            values_callable=lambda x: [e.value for e in x]
        ),
        nullable=False,
    )
    balance_before = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)

    description = Column(String(500), nullable=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "sequence", name="uq_credit_transactions_user_sequence"),
    )


@event.listens_for(CreditTransaction, "before_update")
def _reject_update(mapper, connection, target: CreditTransaction) -> None:
    session = object_session(target)
    if session is not None and not session.is_modified(target, include_collections=False):
        return
    raise InvariantViolationError(
        "Credit ledger rows are append-only",
        details={"credit_transaction_id": target.id, "operation": "update"},
    )


@event.listens_for(CreditTransaction, "before_delete")
def _reject_delete(mapper, connection, target: CreditTransaction) -> None:
    raise InvariantViolationError(
        "Credit ledger rows are append-only",
        details={"credit_transaction_id": target.id, "operation": "delete"},
    )
