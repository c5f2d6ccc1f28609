"""
Trip Model - Scheduled rides offering a fixed number of seats
"""
import enum
from sqlalchemy import (
    Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey,
    Boolean, Text, CheckConstraint, Index,
)

from app.core.clock import utcnow
from app.db.database import Base


class TripStatus(str, enum.Enum):
    ACTIVE = "active"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Trip(Base):
    """
    A driver's scheduled trip.

    ``available_seats`` is only changed through CapacityService so that
    total_seats - available_seats always equals the seats held by bookings.
    """

    __tablename__ = "trips"

    id = Column(Integer, primary_key=True, index=True)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    origin_city = Column(String(100), nullable=False)
    destination_city = Column(String(100), nullable=False)
    departure_time = Column(DateTime, nullable=False)

    price_per_seat = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="NOK")
    total_seats = Column(Integer, nullable=False)
    available_seats = Column(Integer, nullable=False)

    status = Column(
        SQLEnum(
            TripStatus,
            name="trip_status",
            values_callable=lambda x: [e.value for e in x]
        ),
        default=TripStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    auto_accept_bookings = Column(Boolean, default=False, nullable=False)
    description = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("total_seats >= 1", name="ck_trips_total_seats_positive"),
        CheckConstraint(
            "available_seats >= 0 AND available_seats <= total_seats",
            name="ck_trips_available_seats_range",
        ),
        CheckConstraint("price_per_seat >= 0", name="ck_trips_price_non_negative"),
        Index("ix_trips_route_departure", "origin_city", "destination_city", "departure_time"),
    )

    @property
    def seats_taken(self) -> int:
        return self.total_seats - self.available_seats
