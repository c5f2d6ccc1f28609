"""
Seat hold timing: reserve when the booking is created, or only when the
driver confirms it
"""
from decimal import Decimal

import pytest

from app.core.exceptions import CapacityExceededError
from app.db.models.booking import BookingStatus, PaymentMethod
from app.domain.services.booking_service import BookingService
from app.domain.services.capacity_service import CapacityService


class TestOnConfirm:

    @pytest.mark.asyncio
    async def test_pending_booking_does_not_hold_seats(self, db_session, trip, passenger):
        service = BookingService(db_session, capacity_hold_policy="on_confirm")

        booking = await service.create_booking(passenger.id, trip.id, 2, PaymentMethod.CASH)

        assert booking.status == BookingStatus.PENDING
        assert booking.capacity_held is False
        assert trip.available_seats == 4

    @pytest.mark.asyncio
    async def test_confirm_takes_the_seats(self, db_session, trip, driver, passenger):
        service = BookingService(db_session, capacity_hold_policy="on_confirm")
        booking = await service.create_booking(passenger.id, trip.id, 2, PaymentMethod.CASH)

        confirmed = await service.confirm_booking(driver.id, booking.id)

        assert confirmed.capacity_held is True
        assert trip.available_seats == 2
        await CapacityService(db_session).check_invariant(trip.id)

    @pytest.mark.asyncio
    async def test_requests_may_overbook_until_confirmed(self, db_session, trip, driver, user_factory):
        service = BookingService(db_session, capacity_hold_policy="on_confirm")
        first = await user_factory(name="First")
        second = await user_factory(name="Second")
        a = await service.create_booking(first.id, trip.id, 3, PaymentMethod.CASH)
        b = await service.create_booking(second.id, trip.id, 3, PaymentMethod.CASH)

        await service.confirm_booking(driver.id, a.id)
        with pytest.raises(CapacityExceededError):
            await service.confirm_booking(driver.id, b.id)

        await db_session.refresh(trip)
        assert trip.available_seats == 1
        await db_session.refresh(b)
        assert b.status == BookingStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancelling_unheld_booking_returns_nothing(self, db_session, trip, passenger):
        service = BookingService(db_session, capacity_hold_policy="on_confirm")
        booking = await service.create_booking(passenger.id, trip.id, 2, PaymentMethod.CASH)

        await service.cancel_booking(passenger.id, booking.id)

        assert trip.available_seats == 4

    @pytest.mark.asyncio
    async def test_credit_bookings_still_hold_on_create(self, db_session, trip, passenger, fund_credit):
        await fund_credit(passenger.id, Decimal("500"))
        service = BookingService(db_session, capacity_hold_policy="on_confirm")

        booking = await service.create_booking(passenger.id, trip.id, 1, PaymentMethod.CREDIT)

        assert booking.status == BookingStatus.CONFIRMED
        assert booking.capacity_held is True
        assert trip.available_seats == 3


class TestOnCreate:

    @pytest.mark.asyncio
    async def test_pending_booking_holds_seats(self, db_session, trip, passenger):
        service = BookingService(db_session, capacity_hold_policy="on_create")

        booking = await service.create_booking(passenger.id, trip.id, 2, PaymentMethod.CASH)

        assert booking.capacity_held is True
        assert trip.available_seats == 2

    @pytest.mark.asyncio
    async def test_second_request_rejected_when_seats_held(self, db_session, trip, user_factory):
        service = BookingService(db_session, capacity_hold_policy="on_create")
        first = await user_factory(name="First")
        second = await user_factory(name="Second")
        await service.create_booking(first.id, trip.id, 3, PaymentMethod.CASH)

        with pytest.raises(CapacityExceededError):
            await service.create_booking(second.id, trip.id, 3, PaymentMethod.CASH)

    @pytest.mark.asyncio
    async def test_confirm_does_not_take_seats_twice(self, db_session, trip, driver, passenger):
        service = BookingService(db_session, capacity_hold_policy="on_create")
        booking = await service.create_booking(passenger.id, trip.id, 2, PaymentMethod.CASH)

        await service.confirm_booking(driver.id, booking.id)

        assert trip.available_seats == 2
        await CapacityService(db_session).check_invariant(trip.id)
