"""
Tests for the trip lifecycle and search
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.core.clock import utcnow
from app.core.exceptions import (
    InvalidStateError,
    InvalidStateTransitionError,
    TripNotFoundError,
    UnauthorizedActionError,
    ValidationException,
)
from app.db.models.activity_log import ActivityLog
from app.db.models.booking import BookingPaymentStatus, BookingStatus, PaymentMethod
from app.db.models.payment import Payment
from app.db.models.trip import TripStatus
from app.domain.services.activity_service import ActivityType
from app.domain.services.booking_service import BookingService
from app.domain.services.capacity_service import CapacityService
from app.domain.services.ledger_service import LedgerService
from app.domain.services.payment_service import PaymentService
from app.domain.services.trip_service import TripService


class TestCreateTrip:

    @pytest.mark.asyncio
    async def test_create_trip(self, db_session, driver):
        departure = utcnow() + timedelta(days=2)

        trip = await TripService(db_session).create_trip(
            driver.id, " Oslo ", "Trondheim", departure, 3, Decimal("249.995"), currency="nok"
        )

        assert trip.status == TripStatus.ACTIVE
        assert trip.origin_city == "Oslo"
        assert trip.total_seats == 3
        assert trip.available_seats == 3
        assert trip.currency == "NOK"
        assert trip.price_per_seat == Decimal("250.00")

    @pytest.mark.asyncio
    async def test_passenger_cannot_create_trip(self, db_session, passenger):
        with pytest.raises(UnauthorizedActionError):
            await TripService(db_session).create_trip(
                passenger.id, "Oslo", "Bergen", utcnow() + timedelta(days=1), 3, Decimal("100")
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"total_seats": 0},
        {"total_seats": 51},
        {"price_per_seat": Decimal("-1")},
        {"departure_time": "past"},
        {"currency": "XYZ"},
        {"origin_city": "  "},
    ])
    async def test_invalid_input_rejected(self, db_session, driver, overrides):
        kwargs = {
            "origin_city": "Oslo",
            "destination_city": "Bergen",
            "departure_time": utcnow() + timedelta(days=1),
            "total_seats": 3,
            "price_per_seat": Decimal("100"),
        }
        kwargs.update(overrides)
        if kwargs["departure_time"] == "past":
            kwargs["departure_time"] = utcnow() - timedelta(minutes=5)

        with pytest.raises(ValidationException):
            await TripService(db_session).create_trip(driver.id, **kwargs)

    @pytest.mark.asyncio
    async def test_free_trip_allowed(self, db_session, driver):
        trip = await TripService(db_session).create_trip(
            driver.id, "Oslo", "Bergen", utcnow() + timedelta(days=1), 2, Decimal("0")
        )

        assert trip.price_per_seat == Decimal("0")


class TestUpdateTrip:

    @pytest.mark.asyncio
    async def test_update_price_keeps_booked_price(self, db_session, trip, driver, passenger):
        booking = await BookingService(db_session).create_booking(
            passenger.id, trip.id, 1, PaymentMethod.CASH
        )

        updated = await TripService(db_session).update_trip(
            driver.id, trip.id, price_per_seat=Decimal("150")
        )

        assert updated.price_per_seat == Decimal("150.00")
        assert booking.total_price == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_update_without_changes_rejected(self, db_session, trip, driver):
        with pytest.raises(ValidationException):
            await TripService(db_session).update_trip(driver.id, trip.id)

    @pytest.mark.asyncio
    async def test_other_driver_cannot_update(self, db_session, trip, user_factory):
        other = await user_factory(name="Other", is_driver=True)

        with pytest.raises(UnauthorizedActionError):
            await TripService(db_session).update_trip(other.id, trip.id, description="Mine now")

    @pytest.mark.asyncio
    async def test_started_trip_cannot_be_updated(self, db_session, trip, driver):
        service = TripService(db_session)
        driver_id, trip_id = driver.id, trip.id
        await service.start_trip(driver_id, trip_id)

        with pytest.raises(InvalidStateError):
            await service.update_trip(driver_id, trip_id, auto_accept_bookings=True)


class TestTripLifecycle:

    @pytest.mark.asyncio
    async def test_complete_trip_completes_confirmed_bookings(
        self, db_session, trip, driver, user_factory
    ):
        bookings = BookingService(db_session)
        rider = await user_factory(name="Rider")
        waiting = await user_factory(name="Waiting")
        confirmed = await bookings.create_booking(rider.id, trip.id, 1, PaymentMethod.CASH)
        await bookings.confirm_booking(driver.id, confirmed.id)
        pending = await bookings.create_booking(waiting.id, trip.id, 1, PaymentMethod.CASH)

        service = TripService(db_session)
        await service.start_trip(driver.id, trip.id)
        completed = await service.complete_trip(driver.id, trip.id)

        assert completed.status == TripStatus.COMPLETED
        assert completed.started_at is not None
        assert completed.completed_at is not None
        assert confirmed.status == BookingStatus.COMPLETED
        assert confirmed.completed_at is not None
        await db_session.refresh(pending)
        assert pending.status == BookingStatus.PENDING

        result = await db_session.execute(
            select(ActivityLog.activity_type, ActivityLog.related_booking_id)
            .where(ActivityLog.activity_type == ActivityType.BOOKING_COMPLETED)
        )
        assert result.all() == [(ActivityType.BOOKING_COMPLETED, confirmed.id)]

    @pytest.mark.asyncio
    async def test_cannot_complete_before_start(self, db_session, trip, driver):
        with pytest.raises(InvalidStateTransitionError):
            await TripService(db_session).complete_trip(driver.id, trip.id)

    @pytest.mark.asyncio
    async def test_cancel_trip_refunds_everyone_in_full(
        self, db_session, trip_factory, driver, user_factory, fund_credit
    ):
        # within the 2h tier, a passenger cancellation would only get half back
        trip = await trip_factory(driver_id=driver.id, departure_time=utcnow() + timedelta(hours=1))
        payer = await user_factory(name="Payer")
        cash = await user_factory(name="Cash")
        await fund_credit(payer.id, Decimal("300"))
        bookings = BookingService(db_session)
        credit_booking = await bookings.create_booking(payer.id, trip.id, 2, PaymentMethod.CREDIT)
        cash_booking = await bookings.create_booking(cash.id, trip.id, 1, PaymentMethod.CASH)

        cancelled = await TripService(db_session).cancel_trip(driver.id, trip.id, reason="Snow storm")

        assert cancelled.status == TripStatus.CANCELLED
        assert cancelled.cancelled_at is not None
        assert cancelled.available_seats == cancelled.total_seats
        assert credit_booking.status == BookingStatus.CANCELLED
        assert credit_booking.refund_amount == Decimal("200.00")
        assert credit_booking.payment_status == BookingPaymentStatus.REFUNDED
        assert credit_booking.cancellation_reason == "Snow storm"
        assert cash_booking.status == BookingStatus.CANCELLED
        assert cash_booking.refund_amount == Decimal("0")
        assert await LedgerService(db_session).get_balance(payer.id) == Decimal("300.00")
        await CapacityService(db_session).check_invariant(trip.id)

    @pytest.mark.asyncio
    async def test_cancel_trip_after_partial_refund(
        self, db_session, trip, driver, passenger, fund_credit
    ):
        await fund_credit(passenger.id, Decimal("300"))
        booking = await BookingService(db_session).create_booking(
            passenger.id, trip.id, 2, PaymentMethod.CREDIT
        )
        payment = (await db_session.execute(
            select(Payment).where(Payment.booking_id == booking.id)
        )).scalar_one()
        await PaymentService(db_session).refund_payment(
            payment.id, Decimal("30"), "Late pickup", actor_id=driver.id
        )

        await TripService(db_session).cancel_trip(driver.id, trip.id)

        assert booking.refund_amount == Decimal("200.00")
        assert booking.payment_status == BookingPaymentStatus.REFUNDED
        ledger = LedgerService(db_session)
        assert await ledger.get_balance(passenger.id) == Decimal("300.00")
        assert await ledger.verify_account(passenger.id) == Decimal("300.00")

    @pytest.mark.asyncio
    async def test_cancelled_trip_cannot_be_cancelled_again(self, db_session, trip, driver):
        service = TripService(db_session)
        driver_id, trip_id = driver.id, trip.id
        await service.cancel_trip(driver_id, trip_id)

        with pytest.raises(InvalidStateTransitionError):
            await service.cancel_trip(driver_id, trip_id)

    @pytest.mark.asyncio
    async def test_only_owner_may_start(self, db_session, trip, passenger):
        with pytest.raises(UnauthorizedActionError):
            await TripService(db_session).start_trip(passenger.id, trip.id)

    @pytest.mark.asyncio
    async def test_unknown_trip(self, db_session, driver):
        with pytest.raises(TripNotFoundError):
            await TripService(db_session).get_trip(424242)


class TestSearch:

    @pytest.mark.asyncio
    async def test_search_filters_and_orders(self, db_session, trip_factory, driver):
        now = utcnow()
        later = await trip_factory(driver_id=driver.id, departure_time=now + timedelta(days=5))
        sooner = await trip_factory(driver_id=driver.id, departure_time=now + timedelta(days=1))
        await trip_factory(driver_id=driver.id, destination_city="Stavanger")
        await trip_factory(driver_id=driver.id, status=TripStatus.CANCELLED)
        await trip_factory(driver_id=driver.id, available_seats=0)

        found = await TripService(db_session).search_trips(origin="oslo", destination="berg", now=now)

        ids = [t.id for t in found]
        assert ids[0] == sooner.id
        assert ids[-1] == later.id
        assert len(ids) == 2

    @pytest.mark.asyncio
    async def test_search_by_date_seats_and_price(self, db_session, trip_factory, driver):
        now = utcnow()
        departure = now + timedelta(days=4)
        match = await trip_factory(driver_id=driver.id, departure_time=departure, total_seats=3)
        await trip_factory(driver_id=driver.id, departure_time=departure, total_seats=1)
        await trip_factory(driver_id=driver.id, departure_time=departure, price_per_seat=Decimal("900"))
        await trip_factory(driver_id=driver.id, departure_time=departure + timedelta(days=1), total_seats=3)

        found = await TripService(db_session).search_trips(
            departure_date=departure.date(),
            seats_needed=2,
            max_price=Decimal("500"),
            now=now,
        )

        assert [t.id for t in found] == [match.id]

    @pytest.mark.asyncio
    async def test_list_driver_trips_newest_departure_first(self, db_session, trip_factory, driver):
        now = utcnow()
        first = await trip_factory(driver_id=driver.id, departure_time=now + timedelta(days=1))
        second = await trip_factory(driver_id=driver.id, departure_time=now + timedelta(days=2))

        trips = await TripService(db_session).list_driver_trips(driver.id)

        assert [t.id for t in trips] == [second.id, first.id]
