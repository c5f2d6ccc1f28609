"""
Trip API Routes
"""
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.identity import Identity, get_identity
from app.api.routes.bookings import BookingResponse
from app.db.database import get_db
from app.db.models.booking import BookingStatus
from app.db.models.trip import TripStatus
from app.domain.services.booking_service import BookingService
from app.domain.services.trip_service import TripService

router = APIRouter()


class TripCreate(BaseModel):
    origin_city: str = Field(min_length=1, max_length=100)
    destination_city: str = Field(min_length=1, max_length=100)
    departure_time: datetime
    total_seats: int = Field(ge=1)
    price_per_seat: Decimal = Field(ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    auto_accept_bookings: bool = False
    description: Optional[str] = Field(default=None, max_length=1000)


class TripUpdate(BaseModel):
    price_per_seat: Optional[Decimal] = Field(default=None, ge=0)
    departure_time: Optional[datetime] = None
    auto_accept_bookings: Optional[bool] = None
    description: Optional[str] = Field(default=None, max_length=1000)


class TripCancel(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class TripResponse(BaseModel):
    id: int
    driver_id: int
    origin_city: str
    destination_city: str
    departure_time: datetime
    price_per_seat: Decimal
    currency: str
    total_seats: int
    available_seats: int
    status: TripStatus
    auto_accept_bookings: bool
    description: Optional[str]

    class Config:
        from_attributes = True


@router.post(
    "",
    response_model=TripResponse,
    status_code=201,
    summary="Create a trip",
)
async def create_trip(
    body: TripCreate,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    service = TripService(db)
    return await service.create_trip(
        identity.user_id,
        body.origin_city,
        body.destination_city,
        body.departure_time,
        body.total_seats,
        body.price_per_seat,
        currency=body.currency,
        auto_accept_bookings=body.auto_accept_bookings,
        description=body.description,
    )


@router.get(
    "",
    response_model=List[TripResponse],
    summary="Search bookable trips",
    description="With mine=true, lists the caller's own trips as a driver instead.",
)
async def search_trips(
    origin: Optional[str] = None,
    destination: Optional[str] = None,
    departure_date: Optional[date] = None,
    seats: int = Query(1, ge=1),
    max_price: Optional[Decimal] = Query(None, ge=0),
    mine: bool = False,
    status: Optional[TripStatus] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    service = TripService(db)
    if mine:
        return await service.list_driver_trips(identity.user_id, status, limit, offset)
    return await service.search_trips(
        origin=origin,
        destination=destination,
        departure_date=departure_date,
        seats_needed=seats,
        max_price=max_price,
        limit=limit,
        offset=offset,
    )


@router.get("/{trip_id}", response_model=TripResponse, summary="Get a trip")
async def get_trip(
    trip_id: int,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    return await TripService(db).get_trip(trip_id)


@router.patch("/{trip_id}", response_model=TripResponse, summary="Update an active trip")
async def update_trip(
    trip_id: int,
    body: TripUpdate,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    return await TripService(db).update_trip(
        identity.user_id,
        trip_id,
        price_per_seat=body.price_per_seat,
        departure_time=body.departure_time,
        auto_accept_bookings=body.auto_accept_bookings,
        description=body.description,
    )


@router.post("/{trip_id}/start", response_model=TripResponse, summary="Start a trip")
async def start_trip(
    trip_id: int,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    return await TripService(db).start_trip(identity.user_id, trip_id)


@router.post(
    "/{trip_id}/complete",
    response_model=TripResponse,
    summary="Complete a trip and its confirmed bookings",
)
async def complete_trip(
    trip_id: int,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    return await TripService(db).complete_trip(identity.user_id, trip_id)


@router.post(
    "/{trip_id}/cancel",
    response_model=TripResponse,
    summary="Cancel a trip",
    description="Cancels every open booking; settled credit bookings are refunded in full.",
)
async def cancel_trip(
    trip_id: int,
    body: Optional[TripCancel] = None,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    reason = body.reason if body else None
    return await TripService(db).cancel_trip(identity.user_id, trip_id, reason=reason)


@router.get(
    "/{trip_id}/bookings",
    response_model=List[BookingResponse],
    summary="Bookings on the caller's trip",
)
async def list_trip_bookings(
    trip_id: int,
    status: Optional[BookingStatus] = None,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    return await BookingService(db).list_trip_bookings(identity.user_id, trip_id, status)
