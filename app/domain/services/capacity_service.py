"""
Capacity Service - Atomic seat reservation on trips

The trip row is locked and the decrement is a conditional UPDATE that only
matches while enough seats remain, so two concurrent requests for the last
seat cannot both succeed even across processes.
"""
import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.exceptions import (
    InvariantViolationError,
    TripNotFoundError,
    ValidationException,
)
from app.core.logging import get_logger
from app.db.models.booking import Booking
from app.db.models.trip import Trip, TripStatus

logger = get_logger(__name__)


class ReservationOutcome(str, enum.Enum):
    OK = "ok"
    INSUFFICIENT_CAPACITY = "insufficient_capacity"
    TRIP_NOT_BOOKABLE = "trip_not_bookable"
    TRIP_NOT_FOUND = "trip_not_found"


class CapacityService:
    """Reserves and releases seats; the only writer of Trip.available_seats"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def lock_trip(self, trip_id: int) -> Optional[Trip]:
        result = await self.db.execute(
            select(Trip)
            .where(Trip.id == trip_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def is_bookable(trip: Trip, now: Optional[datetime] = None) -> bool:
        return trip.status == TripStatus.ACTIVE and trip.departure_time > (now or utcnow())

    async def reserve(
        self,
        trip_id: int,
        seats: int,
        now: Optional[datetime] = None,
    ) -> ReservationOutcome:
        """Take ``seats`` from the trip if it is active, not departed and has room."""
        if seats < 1:
            raise ValidationException("At least one seat must be reserved", field="seats")

        trip = await self.lock_trip(trip_id)
        if trip is None:
            return ReservationOutcome.TRIP_NOT_FOUND
        if not self.is_bookable(trip, now):
            logger.warning(
                "Reservation rejected: trip not bookable",
                extra_data={"trip_id": trip_id, "status": trip.status.value, "seats": seats},
            )
            return ReservationOutcome.TRIP_NOT_BOOKABLE

        result = await self.db.execute(
            update(Trip)
            .where(
                Trip.id == trip_id,
                Trip.status == TripStatus.ACTIVE,
                Trip.available_seats >= seats,
            )
            .values(available_seats=Trip.available_seats - seats)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(
                "Reservation rejected: insufficient capacity",
                extra_data={
                    "trip_id": trip_id,
                    "requested_seats": seats,
                    "available_seats": trip.available_seats,
                },
            )
            return ReservationOutcome.INSUFFICIENT_CAPACITY

        await self.db.refresh(trip, attribute_names=["available_seats"])
        logger.info(
            "Seats reserved",
            extra_data={
                "trip_id": trip_id,
                "seats": seats,
                "available_seats": trip.available_seats,
            },
        )
        return ReservationOutcome.OK

    async def release(self, trip_id: int, seats: int, reason: str = "release") -> None:
        """
        Give ``seats`` back to the trip.

        Raises InvariantViolationError if that would push available_seats
        above total_seats.
        """
        if seats < 1:
            raise ValidationException("At least one seat must be released", field="seats")

        trip = await self.lock_trip(trip_id)
        if trip is None:
            raise TripNotFoundError(trip_id)

        result = await self.db.execute(
            update(Trip)
            .where(
                Trip.id == trip_id,
                Trip.available_seats + seats <= Trip.total_seats,
            )
            .values(available_seats=Trip.available_seats + seats)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            details = {
                "trip_id": trip_id,
                "seats": seats,
                "available_seats": trip.available_seats,
                "total_seats": trip.total_seats,
            }
            logger.critical("Seat release would exceed trip capacity", extra_data=details)
            raise InvariantViolationError("Seat release would exceed trip capacity", details=details)

        await self.db.refresh(trip, attribute_names=["available_seats"])
        logger.info(
            "Seats released",
            extra_data={
                "trip_id": trip_id,
                "seats": seats,
                "reason": reason,
                "available_seats": trip.available_seats,
            },
        )

    async def held_seats(self, trip_id: int) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.sum(Booking.seats_booked), 0)).where(
                Booking.trip_id == trip_id,
                Booking.capacity_held.is_(True),
            )
        )
        return int(result.scalar_one())

    async def check_invariant(self, trip_id: int) -> None:
        """total_seats - available_seats must equal the seats held by bookings"""
        result = await self.db.execute(select(Trip).where(Trip.id == trip_id))
        trip = result.scalar_one_or_none()
        if trip is None:
            raise TripNotFoundError(trip_id)

        held = await self.held_seats(trip_id)
        if not (0 <= trip.available_seats <= trip.total_seats) or trip.seats_taken != held:
            details = {
                "trip_id": trip_id,
                "total_seats": trip.total_seats,
                "available_seats": trip.available_seats,
                "held_seats": held,
            }
            logger.critical("Trip seat accounting is inconsistent", extra_data=details)
            raise InvariantViolationError("Trip seat accounting is inconsistent", details=details)
