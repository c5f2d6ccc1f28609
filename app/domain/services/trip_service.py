"""
Trip Service - trip lifecycle for drivers and trip search for passengers
"""
from datetime import datetime, timedelta, date
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import to_naive_utc, utcnow
from app.core.config import CURRENCY_MINOR_UNITS, settings
from app.core.exceptions import (
    InvalidStateError,
    TripNotFoundError,
    UnauthorizedActionError,
    UserNotFoundError,
    ValidationException,
)
from app.core.logging import get_logger, log_async_operation, log_state_transition
from app.core.money import quantize_money
from app.db.database import unit_of_work
from app.db.models.booking import Booking, BookingStatus
from app.db.models.trip import Trip, TripStatus
from app.db.models.user import User
from app.domain.services.activity_service import ActivityService, ActivityType
from app.domain.services.booking_service import BookingService
from app.domain.services.capacity_service import CapacityService
from app.domain.services.gateway import BasePaymentGateway
from app.domain.services.outbox_service import NotificationEvent, OutboxService
from app.state_machine.transitions import ensure_transition

logger = get_logger(__name__)

MAX_SEATS_PER_TRIP = 50


class TripService:
    """Service for managing trips"""

    def __init__(self, db: AsyncSession, gateway: Optional[BasePaymentGateway] = None):
        self.db = db
        self.capacity = CapacityService(db)
        self.bookings = BookingService(db, gateway=gateway)
        self.activity = ActivityService(db)
        self.outbox = OutboxService(db)

    async def _lock_owned_trip(self, driver_id: int, trip_id: int) -> Trip:
        trip = await self.capacity.lock_trip(trip_id)
        if trip is None:
            raise TripNotFoundError(trip_id)
        if trip.driver_id != driver_id:
            raise UnauthorizedActionError("Not authorized to manage this trip", user_id=driver_id)
        return trip

    def _transition(self, trip: Trip, target: TripStatus) -> None:
        old = trip.status
        ensure_transition(old, target, trip.id)
        trip.status = target
        log_state_transition(logger, "trip", trip.id, old, target, driver_id=trip.driver_id)

    @staticmethod
    def _validate_price(price_per_seat: Decimal, currency: str) -> Decimal:
        price = quantize_money(price_per_seat, currency)
        if price < 0:
            raise ValidationException("Price per seat cannot be negative", field="price_per_seat")
        return price

    @staticmethod
    def _validate_departure(departure_time: datetime, now: datetime) -> datetime:
        departure_time = to_naive_utc(departure_time)
        if departure_time <= now:
            raise ValidationException("Departure time must be in the future", field="departure_time")
        return departure_time

    @log_async_operation("create_trip")
    async def create_trip(
        self,
        driver_id: int,
        origin_city: str,
        destination_city: str,
        departure_time: datetime,
        total_seats: int,
        price_per_seat: Decimal,
        currency: Optional[str] = None,
        auto_accept_bookings: bool = False,
        description: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Trip:
        now = now or utcnow()
        currency = (currency or settings.DEFAULT_CURRENCY).upper()
        if currency not in CURRENCY_MINOR_UNITS:
            raise ValidationException(f"Unsupported currency: {currency}", field="currency")
        if not origin_city.strip() or not destination_city.strip():
            raise ValidationException("Origin and destination are required", field="origin_city")
        if not (1 <= total_seats <= MAX_SEATS_PER_TRIP):
            raise ValidationException(
                f"Seats must be between 1 and {MAX_SEATS_PER_TRIP}", field="total_seats"
            )
        departure_time = self._validate_departure(departure_time, now)
        price = self._validate_price(price_per_seat, currency)

        async with unit_of_work(self.db, "create_trip"):
            result = await self.db.execute(select(User).where(User.id == driver_id))
            driver = result.scalar_one_or_none()
            if not driver:
                raise UserNotFoundError(driver_id)
            if not driver.is_active or not driver.is_driver:
                raise UnauthorizedActionError("Only active drivers can create trips", user_id=driver_id)

            trip = Trip(
                driver_id=driver_id,
                origin_city=origin_city.strip(),
                destination_city=destination_city.strip(),
                departure_time=departure_time,
                price_per_seat=price,
                currency=currency,
                total_seats=total_seats,
                available_seats=total_seats,
                status=TripStatus.ACTIVE,
                auto_accept_bookings=auto_accept_bookings,
                description=description,
            )
            self.db.add(trip)
            await self.db.flush()
            await self.activity.record(
                driver_id,
                ActivityType.TRIP_CREATED,
                f"Trip {trip.origin_city} -> {trip.destination_city} created",
                related_trip_id=trip.id,
            )

        logger.info(
            "Trip created",
            extra_data={"trip_id": trip.id, "driver_id": driver_id, "total_seats": total_seats},
        )
        return trip

    @log_async_operation("update_trip")
    async def update_trip(
        self,
        driver_id: int,
        trip_id: int,
        price_per_seat: Optional[Decimal] = None,
        departure_time: Optional[datetime] = None,
        auto_accept_bookings: Optional[bool] = None,
        description: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Trip:
        """
        Edit an active trip. Existing bookings keep the price they were
        booked at.
        """
        now = now or utcnow()
        changes: dict = {}
        async with unit_of_work(self.db, "update_trip"):
            trip = await self._lock_owned_trip(driver_id, trip_id)
            if trip.status != TripStatus.ACTIVE:
                raise InvalidStateError(
                    f"Cannot update a {trip.status.value} trip",
                    details={"trip_id": trip_id, "status": trip.status.value},
                )
            if price_per_seat is not None:
                trip.price_per_seat = self._validate_price(price_per_seat, trip.currency)
                changes["price_per_seat"] = str(trip.price_per_seat)
            if departure_time is not None:
                trip.departure_time = self._validate_departure(departure_time, now)
                changes["departure_time"] = trip.departure_time.isoformat()
            if auto_accept_bookings is not None:
                trip.auto_accept_bookings = auto_accept_bookings
                changes["auto_accept_bookings"] = auto_accept_bookings
            if description is not None:
                trip.description = description
                changes["description"] = description
            if not changes:
                raise ValidationException("No valid fields to update")

            await self.activity.record(
                driver_id,
                ActivityType.TRIP_UPDATED,
                f"Trip #{trip_id} updated",
                related_trip_id=trip_id,
                details=changes,
            )
        return trip

    async def start_trip(self, driver_id: int, trip_id: int, now: Optional[datetime] = None) -> Trip:
        now = now or utcnow()
        async with unit_of_work(self.db, "start_trip"):
            trip = await self._lock_owned_trip(driver_id, trip_id)
            self._transition(trip, TripStatus.IN_PROGRESS)
            trip.started_at = now
            await self.activity.record(
                driver_id, ActivityType.TRIP_STARTED, f"Trip #{trip_id} started", related_trip_id=trip_id
            )
        return trip

    @log_async_operation("complete_trip")
    async def complete_trip(self, driver_id: int, trip_id: int, now: Optional[datetime] = None) -> Trip:
        now = now or utcnow()
        async with unit_of_work(self.db, "complete_trip"):
            trip = await self._lock_owned_trip(driver_id, trip_id)
            self._transition(trip, TripStatus.COMPLETED)
            trip.completed_at = now
            completed = await self.bookings.complete_trip_bookings(trip_id, now)
            await self.activity.record(
                driver_id,
                ActivityType.TRIP_COMPLETED,
                f"Trip #{trip_id} completed",
                related_trip_id=trip_id,
                details={"completed_bookings": len(completed)},
            )

        for booking in completed:
            await self.outbox.notify(
                booking.passenger_id,
                NotificationEvent.TRIP_COMPLETED,
                {"trip_id": trip_id, "booking_id": booking.id},
            )
        return trip

    @log_async_operation("cancel_trip")
    async def cancel_trip(
        self,
        driver_id: int,
        trip_id: int,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Trip:
        """
        Cancel the trip and every open booking on it. Settled credit
        bookings are refunded in full regardless of the policy tiers.
        """
        now = now or utcnow()
        async with unit_of_work(self.db, "cancel_trip"):
            trip = await self._lock_owned_trip(driver_id, trip_id)
            ensure_transition(trip.status, TripStatus.CANCELLED, trip.id)

            result = await self.db.execute(
                select(Booking)
                .where(
                    Booking.trip_id == trip_id,
                    Booking.status.in_([BookingStatus.PENDING, BookingStatus.CONFIRMED]),
                )
                .order_by(Booking.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            affected = list(result.scalars().all())
            total_refunded = Decimal("0")
            for booking in affected:
                total_refunded += await self.bookings.cancel_locked(
                    trip,
                    booking,
                    driver_id,
                    reason or "Trip cancelled by driver",
                    now,
                    full_refund=True,
                )

            self._transition(trip, TripStatus.CANCELLED)
            trip.cancelled_at = now
            await self.activity.record(
                driver_id,
                ActivityType.TRIP_CANCELLED,
                f"Trip #{trip_id} cancelled",
                related_trip_id=trip_id,
                details={
                    "reason": reason,
                    "cancelled_bookings": len(affected),
                    "total_refunded": str(total_refunded),
                },
            )

        for booking in affected:
            await self.outbox.notify(
                booking.passenger_id,
                NotificationEvent.TRIP_CANCELLED,
                {
                    "trip_id": trip_id,
                    "booking_id": booking.id,
                    "refund_amount": str(booking.refund_amount),
                    "reason": reason,
                },
            )
        return trip

    # ==================== read side ====================

    async def get_trip(self, trip_id: int) -> Trip:
        result = await self.db.execute(select(Trip).where(Trip.id == trip_id))
        trip = result.scalar_one_or_none()
        if not trip:
            raise TripNotFoundError(trip_id)
        return trip

    async def search_trips(
        self,
        origin: Optional[str] = None,
        destination: Optional[str] = None,
        departure_date: Optional[date] = None,
        seats_needed: int = 1,
        max_price: Optional[Decimal] = None,
        limit: int = 20,
        offset: int = 0,
        now: Optional[datetime] = None,
    ) -> list[Trip]:
        """Bookable trips, earliest departure first"""
        now = now or utcnow()
        query = select(Trip).where(
            Trip.status == TripStatus.ACTIVE,
            Trip.departure_time > now,
            Trip.available_seats >= max(seats_needed, 1),
        )
        if origin:
            query = query.where(Trip.origin_city.ilike(f"%{origin.strip()}%"))
        if destination:
            query = query.where(Trip.destination_city.ilike(f"%{destination.strip()}%"))
        if departure_date:
            day_start = datetime.combine(departure_date, datetime.min.time())
            query = query.where(
                Trip.departure_time >= day_start,
                Trip.departure_time < day_start + timedelta(days=1),
            )
        if max_price is not None:
            query = query.where(Trip.price_per_seat <= max_price)

        result = await self.db.execute(
            query.order_by(Trip.departure_time.asc(), Trip.id.asc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all())

    async def list_driver_trips(
        self,
        driver_id: int,
        status: Optional[TripStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Trip]:
        query = select(Trip).where(Trip.driver_id == driver_id)
        if status is not None:
            query = query.where(Trip.status == status)
        result = await self.db.execute(
            query.order_by(Trip.departure_time.desc(), Trip.id.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all())
