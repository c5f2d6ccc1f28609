"""
Lifecycle transition tables for trips, bookings and payments

A state missing from a table, or mapping to an empty list, is terminal.
"""
from enum import Enum

from app.core.exceptions import InvalidStateTransitionError
from app.db.models.booking import BookingStatus
from app.db.models.payment import PaymentStatus
from app.db.models.trip import TripStatus


BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: [BookingStatus.CONFIRMED, BookingStatus.CANCELLED],
    BookingStatus.CONFIRMED: [BookingStatus.COMPLETED, BookingStatus.CANCELLED],
    BookingStatus.COMPLETED: [],
    BookingStatus.CANCELLED: [],
}

PAYMENT_TRANSITIONS = {
    # pending -> completed only for credit settlement, which never visits the gateway
    PaymentStatus.PENDING: [
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    ],
    PaymentStatus.PROCESSING: [
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    ],
    PaymentStatus.COMPLETED: [],
    PaymentStatus.FAILED: [],
    PaymentStatus.CANCELLED: [],
}

TRIP_TRANSITIONS = {
    TripStatus.ACTIVE: [TripStatus.IN_PROGRESS, TripStatus.CANCELLED],
    TripStatus.IN_PROGRESS: [TripStatus.COMPLETED, TripStatus.CANCELLED],
    TripStatus.COMPLETED: [],
    TripStatus.CANCELLED: [],
}

_TABLES: dict[type[Enum], tuple[str, dict]] = {
    BookingStatus: ("booking", BOOKING_TRANSITIONS),
    PaymentStatus: ("payment", PAYMENT_TRANSITIONS),
    TripStatus: ("trip", TRIP_TRANSITIONS),
}


def can_transition(current: Enum, target: Enum) -> bool:
    _, table = _TABLES[type(current)]
    return target in table.get(current, [])


def is_terminal(state: Enum) -> bool:
    _, table = _TABLES[type(state)]
    return not table.get(state)


def ensure_transition(current: Enum, target: Enum, entity_id: int | None = None) -> None:
    """Raise InvalidStateTransitionError unless ``current -> target`` is allowed."""
    entity, _ = _TABLES[type(current)]
    if not can_transition(current, target):
        raise InvalidStateTransitionError(entity, entity_id, current.value, target.value)
