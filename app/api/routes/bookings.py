"""
Booking API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.identity import Identity, get_identity
from app.db.database import get_db
from app.db.models.booking import BookingPaymentStatus, BookingStatus, PaymentMethod
from app.domain.services.booking_service import BookingService

router = APIRouter()


class BookingCreate(BaseModel):
    trip_id: int
    seats: int = Field(ge=1)
    payment_method: PaymentMethod
    special_requests: Optional[str] = Field(default=None, max_length=1000)


class BookingCancel(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class BookingUpdate(BaseModel):
    special_requests: Optional[str] = Field(default=None, max_length=1000)


class BookingResponse(BaseModel):
    id: int
    trip_id: int
    passenger_id: int
    seats_booked: int
    total_price: Decimal
    currency: str
    payment_method: PaymentMethod
    status: BookingStatus
    payment_status: BookingPaymentStatus
    refund_amount: Decimal
    special_requests: Optional[str]
    cancellation_reason: Optional[str]
    confirmed_at: Optional[datetime]
    cancelled_at: Optional[datetime]

    class Config:
        from_attributes = True


@router.post(
    "",
    response_model=BookingResponse,
    status_code=201,
    summary="Book seats on a trip",
    description=(
        "Credit bookings are paid and confirmed immediately. "
        "Gateway and cash bookings wait for the driver unless the trip auto-accepts."
    ),
)
async def create_booking(
    body: BookingCreate,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    service = BookingService(db)
    return await service.create_booking(
        identity.user_id,
        body.trip_id,
        body.seats,
        body.payment_method,
        special_requests=body.special_requests,
    )


@router.get("", response_model=List[BookingResponse], summary="The caller's bookings")
async def list_my_bookings(
    status: Optional[BookingStatus] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    return await BookingService(db).list_passenger_bookings(identity.user_id, status, limit, offset)


@router.get("/{booking_id}", response_model=BookingResponse, summary="Get a booking")
async def get_booking(
    booking_id: int,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    return await BookingService(db).get_booking(booking_id, identity.user_id)


@router.post(
    "/{booking_id}/confirm",
    response_model=BookingResponse,
    summary="Driver confirms a pending booking",
)
async def confirm_booking(
    booking_id: int,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    return await BookingService(db).confirm_booking(identity.user_id, booking_id)


@router.post(
    "/{booking_id}/cancel",
    response_model=BookingResponse,
    summary="Cancel a booking",
    description="Passenger or driver. Settled credit bookings are refunded by the cancellation policy.",
)
async def cancel_booking(
    booking_id: int,
    body: Optional[BookingCancel] = None,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    reason = body.reason if body else None
    return await BookingService(db).cancel_booking(identity.user_id, booking_id, reason=reason)


@router.patch("/{booking_id}", response_model=BookingResponse, summary="Update special requests")
async def update_booking(
    booking_id: int,
    body: BookingUpdate,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    return await BookingService(db).update_special_requests(
        identity.user_id, booking_id, body.special_requests
    )
