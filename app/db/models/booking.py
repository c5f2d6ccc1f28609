"""
Booking Model - A passenger's claim on seats of a trip
"""
import enum
from sqlalchemy import (
    Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey,
    Boolean, Text, CheckConstraint, Index, text,
)

from app.core.clock import utcnow
from app.db.database import Base

# Partial unique index: one non-cancelled booking per passenger per trip
ACTIVE_BOOKING_INDEX = "uq_bookings_active_trip_passenger"


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class BookingPaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    EXTERNAL_GATEWAY = "external_gateway"
    CASH = "cash"
    CREDIT = "credit"


class Booking(Base):
    """Booking record; never deleted, cancellation is a state"""

    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    passenger_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    seats_booked = Column(Integer, nullable=False, default=1)
    # Fixed at creation; later price edits on the trip do not touch it
    total_price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="NOK")

    payment_method = Column(
        SQLEnum(
            PaymentMethod,
            name="payment_method",
            values_callable=lambda x: [e.value for e in x]
        ),
        nullable=False,
    )
    status = Column(
        SQLEnum(
            BookingStatus,
            name="booking_status",
            values_callable=lambda x: [e.value for e in x]
        ),
        default=BookingStatus.PENDING,
        nullable=False,
        index=True,
    )
    payment_status = Column(
        SQLEnum(
            BookingPaymentStatus,
            name="booking_payment_status",
            values_callable=lambda x: [e.value for e in x]
        ),
        default=BookingPaymentStatus.PENDING,
        nullable=False,
    )
    # True while seats_booked is counted against trip capacity
    capacity_held = Column(Boolean, default=False, nullable=False)
    refund_amount = Column(Numeric(12, 2), nullable=False, default=0)

    special_requests = Column(Text, nullable=True)
    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancellation_reason = Column(String(500), nullable=True)

    cancelled_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("seats_booked >= 1", name="ck_bookings_seats_positive"),
        CheckConstraint("total_price >= 0", name="ck_bookings_total_price_non_negative"),
        Index(
            ACTIVE_BOOKING_INDEX,
            "trip_id",
            "passenger_id",
            unique=True,
            postgresql_where=text("status != 'cancelled'"),
            sqlite_where=text("status != 'cancelled'"),
        ),
    )
