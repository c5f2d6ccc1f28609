"""
Booking Service - booking lifecycle on top of capacity, payments and the ledger

Every write runs as one unit of work: seats, payment settlement, ledger
rows, the status change and the activity row commit or roll back together.
Notifications are queued only after the commit.

Lock order is trip, then booking, then payment, then user (ledger), so
concurrent operations on the same trip serialise on the trip row.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.core.exceptions import (
    BookingNotFoundError,
    CapacityExceededError,
    DuplicateBookingError,
    InvalidStateError,
    PolicyViolationError,
    TripNotBookableError,
    TripNotFoundError,
    UnauthorizedActionError,
    UserNotFoundError,
    ValidationException,
)
from app.core.logging import get_logger, log_async_operation, log_state_transition
from app.core.money import quantize_money
from app.db.database import unit_of_work
from app.db.models.booking import (
    ACTIVE_BOOKING_INDEX,
    Booking,
    BookingPaymentStatus,
    BookingStatus,
    PaymentMethod,
)
from app.db.models.trip import Trip
from app.db.models.user import User
from app.domain.services.activity_service import ActivityService, ActivityType
from app.domain.services.cancellation_policy import CancellationPolicy
from app.domain.services.capacity_service import CapacityService, ReservationOutcome
from app.domain.services.gateway import BasePaymentGateway
from app.domain.services.outbox_service import NotificationEvent, OutboxService
from app.domain.services.payment_service import PaymentService
from app.state_machine.transitions import ensure_transition

logger = get_logger(__name__)

MAX_SPECIAL_REQUESTS_LENGTH = 1000

# Booking payment states that still have credit on the payment to give back
_SETTLED_PAYMENT_STATUSES = (
    BookingPaymentStatus.COMPLETED,
    BookingPaymentStatus.PARTIALLY_REFUNDED,
)


def _is_active_booking_conflict(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    return ACTIVE_BOOKING_INDEX in message or "bookings.trip_id, bookings.passenger_id" in message


class BookingService:
    """Create, confirm, cancel and read bookings"""

    def __init__(
        self,
        db: AsyncSession,
        policy: Optional[CancellationPolicy] = None,
        gateway: Optional[BasePaymentGateway] = None,
        capacity_hold_policy: Optional[str] = None,
    ):
        self.db = db
        self.policy = policy or CancellationPolicy()
        self.capacity_hold_policy = capacity_hold_policy or settings.CAPACITY_HOLD_POLICY
        self.capacity = CapacityService(db)
        self.payments = PaymentService(db, gateway=gateway)
        self.activity = ActivityService(db)
        self.outbox = OutboxService(db)

    # ==================== helpers ====================

    async def _get_active_user(self, user_id: int) -> User:
        result = await self.db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if not user:
            raise UserNotFoundError(user_id)
        if not user.is_active:
            raise UnauthorizedActionError("Account is not active", user_id=user_id)
        return user

    async def _get_booking(self, booking_id: int) -> Booking:
        result = await self.db.execute(select(Booking).where(Booking.id == booking_id))
        booking = result.scalar_one_or_none()
        if not booking:
            raise BookingNotFoundError(booking_id)
        return booking

    async def _get_trip(self, trip_id: int) -> Trip:
        result = await self.db.execute(select(Trip).where(Trip.id == trip_id))
        trip = result.scalar_one_or_none()
        if not trip:
            raise TripNotFoundError(trip_id)
        return trip

    async def _lock_booking(self, booking_id: int) -> Booking:
        result = await self.db.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if not booking:
            raise BookingNotFoundError(booking_id)
        return booking

    async def _lock_trip_and_booking(self, booking_id: int) -> tuple[Trip, Booking]:
        peek = await self._get_booking(booking_id)
        trip = await self.capacity.lock_trip(peek.trip_id)
        if trip is None:
            raise TripNotFoundError(peek.trip_id)
        return trip, await self._lock_booking(booking_id)

    async def _reserve_or_raise(self, trip: Trip, seats: int, now: datetime) -> None:
        outcome = await self.capacity.reserve(trip.id, seats, now)
        if outcome == ReservationOutcome.TRIP_NOT_FOUND:
            raise TripNotFoundError(trip.id)
        if outcome == ReservationOutcome.TRIP_NOT_BOOKABLE:
            raise TripNotBookableError(trip.id, trip.status.value)
        if outcome == ReservationOutcome.INSUFFICIENT_CAPACITY:
            raise CapacityExceededError(trip.id, seats, trip.available_seats)

    def _transition(self, booking: Booking, target: BookingStatus, now: datetime) -> None:
        old = booking.status
        ensure_transition(old, target, booking.id)
        booking.status = target
        if target == BookingStatus.CONFIRMED:
            booking.confirmed_at = now
        elif target == BookingStatus.CANCELLED:
            booking.cancelled_at = now
        elif target == BookingStatus.COMPLETED:
            booking.completed_at = now
        log_state_transition(
            logger, "booking", booking.id, old, target,
            trip_id=booking.trip_id, passenger_id=booking.passenger_id,
        )

    @staticmethod
    def _payload(booking: Booking, **extra) -> dict:
        return {
            "booking_id": booking.id,
            "trip_id": booking.trip_id,
            "seats_booked": booking.seats_booked,
            "status": booking.status.value,
            **extra,
        }

    # ==================== lifecycle ====================

    @log_async_operation("create_booking")
    async def create_booking(
        self,
        passenger_id: int,
        trip_id: int,
        seats: int,
        payment_method: PaymentMethod | str,
        special_requests: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Book ``seats`` on a trip.

        Credit bookings are paid from the ledger immediately and confirmed;
        on an auto-accept trip other bookings are confirmed straight away;
        otherwise the booking waits in ``pending`` for the driver.
        """
        now = now or utcnow()
        if seats < 1:
            raise ValidationException("At least one seat must be booked", field="seats")
        try:
            payment_method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationException(
                f"Unknown payment method: {payment_method}", field="payment_method"
            )
        if special_requests and len(special_requests) > MAX_SPECIAL_REQUESTS_LENGTH:
            raise ValidationException("Special requests are too long", field="special_requests")

        reserved = False
        try:
            async with unit_of_work(self.db, "create_booking"):
                await self._get_active_user(passenger_id)
                trip = await self.capacity.lock_trip(trip_id)
                if trip is None:
                    raise TripNotFoundError(trip_id)

                if trip.driver_id == passenger_id:
                    logger.warning(
                        "Booking rejected: passenger is the driver",
                        extra_data={"trip_id": trip_id, "passenger_id": passenger_id},
                    )
                    raise PolicyViolationError(
                        "Cannot book your own trip",
                        details={"trip_id": trip_id},
                    )

                existing = await self.db.execute(
                    select(Booking.id).where(
                        Booking.trip_id == trip_id,
                        Booking.passenger_id == passenger_id,
                        Booking.status != BookingStatus.CANCELLED,
                    )
                )
                if existing.first() is not None:
                    logger.warning(
                        "Booking rejected: duplicate",
                        extra_data={"trip_id": trip_id, "passenger_id": passenger_id},
                    )
                    raise DuplicateBookingError(trip_id, passenger_id)

                confirm_now = payment_method == PaymentMethod.CREDIT or trip.auto_accept_bookings
                if self.capacity_hold_policy == "on_create" or confirm_now:
                    await self._reserve_or_raise(trip, seats, now)
                    reserved = True
                elif not self.capacity.is_bookable(trip, now):
                    raise TripNotBookableError(trip.id, trip.status.value)
                elif trip.available_seats < seats:
                    raise CapacityExceededError(trip.id, seats, trip.available_seats)

                booking = Booking(
                    trip_id=trip_id,
                    passenger_id=passenger_id,
                    seats_booked=seats,
                    total_price=quantize_money(trip.price_per_seat * seats, trip.currency),
                    currency=trip.currency,
                    payment_method=payment_method,
                    status=BookingStatus.PENDING,
                    payment_status=BookingPaymentStatus.PENDING,
                    capacity_held=reserved,
                    refund_amount=Decimal("0"),
                    special_requests=special_requests,
                )
                self.db.add(booking)
                try:
                    await self.db.flush()
                except IntegrityError as e:
                    if _is_active_booking_conflict(e):
                        raise DuplicateBookingError(trip_id, passenger_id)
                    raise

                if payment_method == PaymentMethod.CREDIT:
                    await self.payments.settle_with_credit(booking, now)
                    booking.payment_status = BookingPaymentStatus.COMPLETED
                    self._transition(booking, BookingStatus.CONFIRMED, now)
                elif trip.auto_accept_bookings:
                    self._transition(booking, BookingStatus.CONFIRMED, now)

                await self.activity.record(
                    passenger_id,
                    ActivityType.BOOKING_CREATED,
                    f"Booked {seats} seat(s) on trip #{trip_id}",
                    related_trip_id=trip_id,
                    related_booking_id=booking.id,
                    details={"payment_method": payment_method.value, "status": booking.status.value},
                )
        except Exception:
            if reserved:
                logger.warning(
                    "Compensating release: seat reservation rolled back with the booking",
                    extra_data={"trip_id": trip_id, "passenger_id": passenger_id, "seats": seats},
                )
            raise

        logger.info(
            "Booking created",
            extra_data={
                "booking_id": booking.id,
                "trip_id": trip_id,
                "passenger_id": passenger_id,
                "seats": seats,
                "status": booking.status.value,
                "total_price": str(booking.total_price),
            },
        )
        await self.outbox.notify(
            trip.driver_id,
            NotificationEvent.BOOKING_REQUEST if booking.status == BookingStatus.PENDING
            else NotificationEvent.BOOKING_CREATED,
            self._payload(booking, passenger_id=passenger_id),
        )
        return booking

    @log_async_operation("confirm_booking")
    async def confirm_booking(
        self,
        driver_id: int,
        booking_id: int,
        now: Optional[datetime] = None,
    ) -> Booking:
        """Driver accepts a pending booking"""
        now = now or utcnow()
        async with unit_of_work(self.db, "confirm_booking"):
            trip, booking = await self._lock_trip_and_booking(booking_id)
            if trip.driver_id != driver_id:
                raise UnauthorizedActionError(
                    "Not authorized to confirm this booking", user_id=driver_id
                )
            ensure_transition(booking.status, BookingStatus.CONFIRMED, booking.id)

            if not booking.capacity_held:
                await self._reserve_or_raise(trip, booking.seats_booked, now)
                booking.capacity_held = True

            self._transition(booking, BookingStatus.CONFIRMED, now)
            await self.activity.record(
                booking.passenger_id,
                ActivityType.BOOKING_CONFIRMED,
                f"Booking #{booking.id} confirmed by driver",
                related_trip_id=trip.id,
                related_booking_id=booking.id,
            )

        await self.outbox.notify(
            booking.passenger_id,
            NotificationEvent.BOOKING_CONFIRMED,
            self._payload(booking),
        )
        return booking

    async def cancel_locked(
        self,
        trip: Trip,
        booking: Booking,
        actor_id: int,
        reason: Optional[str],
        now: datetime,
        full_refund: bool = False,
    ) -> Decimal:
        """
        Cancel a booking whose trip and booking rows the caller has locked.

        Releases held seats and refunds a settled credit booking, by policy
        tier or in full. Returns the refunded amount. Does not commit.
        """
        ensure_transition(booking.status, BookingStatus.CANCELLED, booking.id)
        was_confirmed = booking.status == BookingStatus.CONFIRMED

        if booking.capacity_held:
            await self.capacity.release(trip.id, booking.seats_booked, reason="booking_cancelled")
            booking.capacity_held = False

        refund = Decimal("0")
        if (
            was_confirmed
            and booking.payment_method == PaymentMethod.CREDIT
            and booking.payment_status in _SETTLED_PAYMENT_STATUSES
        ):
            if full_refund:
                refund = quantize_money(booking.total_price, booking.currency)
            else:
                refund = self.policy.refund_amount(
                    booking.total_price, trip.departure_time, now, booking.currency
                )
            payment = await self.payments.get_credit_payment_for_booking(booking.id, for_update=True)
            if payment is not None:
                # earlier partial refunds come off what is still on the payment
                refund = min(refund, payment.refundable_amount)
            if refund > 0:
                await self.payments.apply_credit_refund(
                    booking,
                    refund,
                    f"Refund for cancelled booking #{booking.id}",
                    now,
                )
                booking.refund_amount = (booking.refund_amount or Decimal("0")) + refund
                booking.payment_status = (
                    BookingPaymentStatus.REFUNDED if booking.refund_amount >= booking.total_price
                    else BookingPaymentStatus.PARTIALLY_REFUNDED
                )

        booking.cancelled_by = actor_id
        booking.cancellation_reason = (reason or "")[:500] or None
        self._transition(booking, BookingStatus.CANCELLED, now)
        await self.activity.record(
            booking.passenger_id,
            ActivityType.BOOKING_CANCELLED,
            f"Booking #{booking.id} cancelled",
            related_trip_id=trip.id,
            related_booking_id=booking.id,
            details={"cancelled_by": actor_id, "refund_amount": str(refund)},
        )
        return refund

    @log_async_operation("cancel_booking")
    async def cancel_booking(
        self,
        actor_id: int,
        booking_id: int,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        """Passenger or driver cancels a pending or confirmed booking"""
        now = now or utcnow()
        async with unit_of_work(self.db, "cancel_booking"):
            trip, booking = await self._lock_trip_and_booking(booking_id)
            if actor_id not in (booking.passenger_id, trip.driver_id):
                raise UnauthorizedActionError(
                    "Not authorized to cancel this booking", user_id=actor_id
                )
            refund = await self.cancel_locked(trip, booking, actor_id, reason, now)

        logger.info(
            "Booking cancelled",
            extra_data={
                "booking_id": booking.id,
                "trip_id": trip.id,
                "cancelled_by": actor_id,
                "refund_amount": str(refund),
            },
        )
        other_party = trip.driver_id if actor_id == booking.passenger_id else booking.passenger_id
        await self.outbox.notify(
            other_party,
            NotificationEvent.BOOKING_CANCELLED,
            self._payload(booking, refund_amount=str(refund), reason=reason),
        )
        return booking

    async def complete_trip_bookings(self, trip_id: int, now: Optional[datetime] = None) -> list[Booking]:
        """Move every confirmed booking on the trip to completed. Does not commit."""
        now = now or utcnow()
        result = await self.db.execute(
            select(Booking)
            .where(Booking.trip_id == trip_id, Booking.status == BookingStatus.CONFIRMED)
            .order_by(Booking.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        bookings = list(result.scalars().all())
        for booking in bookings:
            self._transition(booking, BookingStatus.COMPLETED, now)
            await self.activity.record(
                booking.passenger_id,
                ActivityType.BOOKING_COMPLETED,
                f"Booking #{booking.id} completed",
                related_trip_id=trip_id,
                related_booking_id=booking.id,
            )
        return bookings

    # ==================== read side ====================

    async def get_booking(self, booking_id: int, user_id: int) -> Booking:
        """Visible to the passenger and the trip's driver only"""
        booking = await self._get_booking(booking_id)
        if user_id != booking.passenger_id:
            trip = await self._get_trip(booking.trip_id)
            if user_id != trip.driver_id:
                raise UnauthorizedActionError("Not authorized to view this booking", user_id=user_id)
        return booking

    async def list_passenger_bookings(
        self,
        passenger_id: int,
        status: Optional[BookingStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Booking]:
        query = select(Booking).where(Booking.passenger_id == passenger_id)
        if status is not None:
            query = query.where(Booking.status == status)
        result = await self.db.execute(
            query.order_by(Booking.created_at.desc(), Booking.id.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all())

    async def list_trip_bookings(
        self,
        driver_id: int,
        trip_id: int,
        status: Optional[BookingStatus] = None,
    ) -> list[Booking]:
        trip = await self._get_trip(trip_id)
        if trip.driver_id != driver_id:
            raise UnauthorizedActionError("Not authorized to view bookings of this trip", user_id=driver_id)
        query = select(Booking).where(Booking.trip_id == trip_id)
        if status is not None:
            query = query.where(Booking.status == status)
        result = await self.db.execute(query.order_by(Booking.created_at.asc(), Booking.id.asc()))
        return list(result.scalars().all())

    async def update_special_requests(
        self,
        passenger_id: int,
        booking_id: int,
        special_requests: Optional[str],
    ) -> Booking:
        if special_requests and len(special_requests) > MAX_SPECIAL_REQUESTS_LENGTH:
            raise ValidationException("Special requests are too long", field="special_requests")

        async with unit_of_work(self.db, "update_special_requests"):
            booking = await self._lock_booking(booking_id)
            if booking.passenger_id != passenger_id:
                raise UnauthorizedActionError("Not authorized to update this booking", user_id=passenger_id)
            if booking.status in (BookingStatus.CANCELLED, BookingStatus.COMPLETED):
                raise InvalidStateError(
                    f"Cannot update a {booking.status.value} booking",
                    details={"booking_id": booking_id, "status": booking.status.value},
                )
            booking.special_requests = special_requests
        return booking
