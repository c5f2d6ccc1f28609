"""
Domain Services
"""
from app.domain.services.activity_service import ActivityService
from app.domain.services.booking_service import BookingService
from app.domain.services.cancellation_policy import CancellationPolicy
from app.domain.services.capacity_service import CapacityService
from app.domain.services.ledger_service import LedgerService
from app.domain.services.outbox_service import OutboxService
from app.domain.services.payment_service import PaymentService
from app.domain.services.trip_service import TripService

__all__ = [
    "ActivityService",
    "BookingService",
    "CancellationPolicy",
    "CapacityService",
    "LedgerService",
    "OutboxService",
    "PaymentService",
    "TripService",
]
