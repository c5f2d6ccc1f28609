"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite with SAVEPOINT support)
- A fake payment gateway
- Test data factories (users, trips, bookings, credit)
"""
# Settings are read at import time, so the environment is prepared before importing app
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMENT_GATEWAY_CLIENT_ID", "test-client-id")
os.environ.setdefault("PAYMENT_GATEWAY_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("PAYMENT_CALLBACK_SECRET", "test-callback-secret")
os.environ.setdefault("CAPACITY_HOLD_POLICY", "on_create")

import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy import event

from app.core.clock import utcnow
from app.core.config import settings
from app.core.exceptions import PaymentGatewayError
from app.db.database import Base, get_db
from app.db.models.booking import Booking, BookingPaymentStatus, BookingStatus, PaymentMethod
from app.db.models.credit_transaction import CreditTransactionType
from app.db.models.trip import Trip, TripStatus
from app.db.models.user import User, UserStatus
from app.domain.services.gateway import (
    AuthorizationResult,
    BasePaymentGateway,
    GatewayStatus,
    set_payment_gateway,
)
from app.domain.services.ledger_service import LedgerService
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


def enable_sqlite_savepoints(engine, begin_statement: str = "BEGIN") -> None:
    """
    pysqlite's own transaction handling breaks SAVEPOINT; take it over so
    begin_nested() works. ``BEGIN IMMEDIATE`` takes the write lock up front,
    which makes concurrent writers serialise the way row locks would.
    """
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql(begin_statement)


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )
    enable_sqlite_savepoints(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def identity_headers(user: User) -> dict[str, str]:
    return {settings.IDENTITY_HEADER: str(user.id)}


# ============================================================================
# Fake Payment Gateway
# ============================================================================

class FakePaymentGateway(BasePaymentGateway):
    """In-memory gateway: records calls, outcomes are set by the test"""

    def __init__(self) -> None:
        self.authorized: list[dict] = []
        self.refunds: list[dict] = []
        self.statuses: dict[str, GatewayStatus] = {}
        self.fail_authorize: Optional[Exception] = None
        self.fail_refund: Optional[Exception] = None

    @property
    def gateway_name(self) -> str:
        return "fake"

    async def authorize(self, amount, currency, payer_ref, order_ref, description):
        if self.fail_authorize is not None:
            raise self.fail_authorize
        reference = f"fake-{order_ref}"
        self.authorized.append({
            "amount": amount,
            "currency": currency,
            "payer_ref": payer_ref,
            "order_ref": order_ref,
            "description": description,
            "reference": reference,
        })
        self.statuses.setdefault(reference, GatewayStatus.PENDING)
        return AuthorizationResult(
            external_reference=reference,
            redirect_url=f"https://pay.example/{reference}",
        )

    async def get_status(self, external_reference):
        if external_reference not in self.statuses:
            raise PaymentGatewayError("unknown reference", details={"reference": external_reference})
        return self.statuses[external_reference]

    async def refund(self, external_reference, amount, currency, reason):
        if self.fail_refund is not None:
            raise self.fail_refund
        self.refunds.append({
            "reference": external_reference,
            "amount": amount,
            "currency": currency,
            "reason": reason,
        })


@pytest.fixture
def fake_gateway():
    """Fake gateway installed as the process-wide gateway"""
    gateway = FakePaymentGateway()
    set_payment_gateway(gateway)
    yield gateway
    set_payment_gateway(None)


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating test users"""
    counter = {"n": 0}

    async def _create_user(
        name: str = "Test User",
        is_driver: bool = False,
        status: UserStatus = UserStatus.ACTIVE,
        phone_number: str | None = None,
    ) -> User:
        counter["n"] += 1
        user = User(
            name=name,
            is_driver=is_driver,
            status=status,
            phone_number=phone_number or f"+4790000{counter['n']:03d}",
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def trip_factory(db_session: AsyncSession):
    """Factory for creating test trips directly in the database"""
    async def _create_trip(
        driver_id: int,
        total_seats: int = 4,
        available_seats: int | None = None,
        price_per_seat: Decimal = Decimal("100.00"),
        currency: str = "NOK",
        departure_time: datetime | None = None,
        status: TripStatus = TripStatus.ACTIVE,
        auto_accept_bookings: bool = False,
        origin_city: str = "Oslo",
        destination_city: str = "Bergen",
    ) -> Trip:
        trip = Trip(
            driver_id=driver_id,
            origin_city=origin_city,
            destination_city=destination_city,
            departure_time=departure_time or utcnow() + timedelta(days=3),
            price_per_seat=price_per_seat,
            currency=currency,
            total_seats=total_seats,
            available_seats=total_seats if available_seats is None else available_seats,
            status=status,
            auto_accept_bookings=auto_accept_bookings,
        )
        db_session.add(trip)
        await db_session.commit()
        await db_session.refresh(trip)
        return trip

    return _create_trip


@pytest.fixture
def booking_factory(db_session: AsyncSession):
    """
    Factory for raw Booking rows. Does not touch trip capacity; use
    BookingService when seat accounting matters.
    """
    async def _create_booking(
        trip_id: int,
        passenger_id: int,
        seats_booked: int = 1,
        total_price: Decimal = Decimal("100.00"),
        status: BookingStatus = BookingStatus.PENDING,
        payment_method: PaymentMethod = PaymentMethod.EXTERNAL_GATEWAY,
        payment_status: BookingPaymentStatus = BookingPaymentStatus.PENDING,
        capacity_held: bool = False,
    ) -> Booking:
        booking = Booking(
            trip_id=trip_id,
            passenger_id=passenger_id,
            seats_booked=seats_booked,
            total_price=total_price,
            currency="NOK",
            payment_method=payment_method,
            status=status,
            payment_status=payment_status,
            capacity_held=capacity_held,
            refund_amount=Decimal("0"),
        )
        db_session.add(booking)
        await db_session.commit()
        await db_session.refresh(booking)
        return booking

    return _create_booking


@pytest.fixture
def fund_credit(db_session: AsyncSession):
    """Put purchased credit on a user's ledger"""
    async def _fund(user_id: int, amount: Decimal) -> Decimal:
        ledger = LedgerService(db_session)
        await ledger.credit(user_id, amount, CreditTransactionType.PURCHASE, "Test top-up")
        await db_session.commit()
        return await ledger.get_balance(user_id)

    return _fund


# ============================================================================
# Sample Test Data
# ============================================================================

@pytest.fixture
async def driver(user_factory) -> User:
    return await user_factory(name="Sample Driver", is_driver=True)


@pytest.fixture
async def passenger(user_factory) -> User:
    return await user_factory(name="Sample Passenger")


@pytest.fixture
async def trip(trip_factory, driver) -> Trip:
    """Active trip, 4 seats at 100.00 NOK, departing in 3 days"""
    return await trip_factory(driver_id=driver.id)


# ============================================================================
# Global State Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture(autouse=True)
def reset_payment_gateway():
    yield
    set_payment_gateway(None)
