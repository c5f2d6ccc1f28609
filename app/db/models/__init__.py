"""
Database Models
"""
from app.db.models.user import User, UserStatus
from app.db.models.trip import Trip, TripStatus
from app.db.models.booking import (
    Booking,
    BookingStatus,
    BookingPaymentStatus,
    PaymentMethod,
)
from app.db.models.payment import Payment, PaymentStatus, PaymentChannel, PaymentPurpose
from app.db.models.credit_transaction import CreditTransaction, CreditTransactionType
from app.db.models.activity_log import ActivityLog
from app.db.models.outbox_message import OutboxMessage, MessageStatus

__all__ = [
    "User",
    "UserStatus",
    "Trip",
    "TripStatus",
    "Booking",
    "BookingStatus",
    "BookingPaymentStatus",
    "PaymentMethod",
    "Payment",
    "PaymentStatus",
    "PaymentChannel",
    "PaymentPurpose",
    "CreditTransaction",
    "CreditTransactionType",
    "ActivityLog",
    "OutboxMessage",
    "MessageStatus",
]
