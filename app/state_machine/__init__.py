"""
Lifecycle state machines for trips, bookings and payments
"""
from app.state_machine.transitions import (
    BOOKING_TRANSITIONS,
    PAYMENT_TRANSITIONS,
    TRIP_TRANSITIONS,
    can_transition,
    ensure_transition,
    is_terminal,
)

__all__ = [
    "BOOKING_TRANSITIONS",
    "PAYMENT_TRANSITIONS",
    "TRIP_TRANSITIONS",
    "can_transition",
    "ensure_transition",
    "is_terminal",
]
