"""
Fixtures and helpers for end-to-end scenario tests.

Provides:
- a file-backed SQLite database with one session per simulated client,
  for races between concurrent requests
- DB assertion helpers (booking status, trip seats, credit balance, outbox)
"""
from typing import AsyncGenerator

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.db.database import Base
from app.db.models.booking import Booking, BookingStatus
from app.db.models.outbox_message import OutboxMessage
from app.db.models.trip import Trip
from app.domain.services.capacity_service import CapacityService
from app.domain.services.ledger_service import LedgerService
from tests.conftest import enable_sqlite_savepoints


# ============================================================================
# Concurrent sessions
# ============================================================================

@pytest.fixture
async def shared_engine(tmp_path):
    """
    Engine on a database file, so every session gets its own connection.
    BEGIN IMMEDIATE makes concurrent writers queue behind each other.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'scenario.db'}",
        connect_args={"timeout": 30},
    )
    enable_sqlite_savepoints(engine, begin_statement="BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(shared_engine) -> async_sessionmaker:
    return async_sessionmaker(shared_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def setup_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Session used only to arrange data and check results"""
    async with session_maker() as session:
        yield session


# ============================================================================
# DB assertions
# ============================================================================

async def assert_booking_status(
    db: AsyncSession, booking_id: int, expected: BookingStatus
) -> Booking:
    result = await db.execute(
        select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
    )
    booking = result.scalar_one()
    assert booking.status == expected, (
        f"booking {booking_id}: expected {expected.value}, got {booking.status.value}"
    )
    return booking


async def assert_trip_seats(db: AsyncSession, trip_id: int, available: int) -> Trip:
    result = await db.execute(
        select(Trip).where(Trip.id == trip_id).execution_options(populate_existing=True)
    )
    trip = result.scalar_one()
    assert trip.available_seats == available, (
        f"trip {trip_id}: expected {available} seats available, got {trip.available_seats}"
    )
    await CapacityService(db).check_invariant(trip_id)
    return trip


async def assert_balance(db: AsyncSession, user_id: int, expected) -> None:
    ledger = LedgerService(db)
    assert await ledger.get_balance(user_id) == expected
    assert await ledger.verify_account(user_id) == expected


async def outbox_events(db: AsyncSession, user_id: int) -> list[str]:
    result = await db.execute(
        select(OutboxMessage.event_type)
        .where(OutboxMessage.user_id == user_id)
        .order_by(OutboxMessage.id)
    )
    return list(result.scalars().all())
