"""
Payment Model - Gateway and credit payments
"""
import enum
from sqlalchemy import (
    Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey,
    Text, CheckConstraint,
)

from app.core.clock import utcnow
from app.db.database import Base


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentChannel(str, enum.Enum):
    """How the money moves: through the gateway or out of the credit balance"""
    EXTERNAL_GATEWAY = "external_gateway"
    CREDIT = "credit"


class PaymentPurpose(str, enum.Enum):
    BOOKING = "booking"
    CREDIT_PURCHASE = "credit_purchase"


TERMINAL_PAYMENT_STATUSES = frozenset({
    PaymentStatus.COMPLETED,
    PaymentStatus.FAILED,
    PaymentStatus.CANCELLED,
})


class Payment(Base):
    """A single charge; refunds accumulate in refunded_amount"""

    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="NOK")
    method = Column(
        SQLEnum(
            PaymentChannel,
            name="payment_channel",
            values_callable=lambda x: [e.value for e in x]
        ),
        nullable=False,
    )
    purpose = Column(
        SQLEnum(
            PaymentPurpose,
            name="payment_purpose",
            values_callable=lambda x: [e.value for e in x]
        ),
        default=PaymentPurpose.BOOKING,
        nullable=False,
    )
    status = Column(
        SQLEnum(
            PaymentStatus,
            name="payment_status",
            values_callable=lambda x: [e.value for e in x]
        ),
        default=PaymentStatus.PENDING,
        nullable=False,
        index=True,
    )

    # Gateway order reference; also the callback path key
    external_reference = Column(String(100), unique=True, nullable=True, index=True)
    redirect_url = Column(Text, nullable=True)
    description = Column(String(500), nullable=True)
    failure_reason = Column(String(1000), nullable=True)

    refunded_amount = Column(Numeric(12, 2), nullable=False, default=0)
    refund_reason = Column(String(500), nullable=True)

    processed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        CheckConstraint(
            "refunded_amount >= 0 AND refunded_amount <= amount",
            name="ck_payments_refunded_range",
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES

    @property
    def refundable_amount(self):
        return self.amount - (self.refunded_amount or 0)
