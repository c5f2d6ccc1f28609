"""
Payment API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.callback_auth import verify_payment_callback
from app.api.dependencies.identity import Identity, get_identity
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.payment import PaymentChannel, PaymentPurpose, PaymentStatus
from app.domain.services.payment_service import PaymentService

logger = get_logger(__name__)

router = APIRouter()


class TripPaymentRequest(BaseModel):
    booking_id: int


class CreditPurchaseRequest(BaseModel):
    amount: Decimal = Field(gt=0)


class RefundRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    reason: str = Field(min_length=1, max_length=500)


class PaymentResponse(BaseModel):
    id: int
    user_id: int
    booking_id: Optional[int]
    amount: Decimal
    currency: str
    method: PaymentChannel
    purpose: PaymentPurpose
    status: PaymentStatus
    external_reference: Optional[str]
    redirect_url: Optional[str]
    refunded_amount: Decimal
    failure_reason: Optional[str]
    created_at: datetime
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class CallbackResponse(BaseModel):
    payment_id: int
    status: PaymentStatus
    replayed: bool


@router.post(
    "/trip",
    response_model=PaymentResponse,
    status_code=201,
    summary="Start a gateway payment for a booking",
)
async def create_trip_payment(
    body: TripPaymentRequest,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    return await PaymentService(db).create_trip_payment(identity.user_id, body.booking_id)


@router.post(
    "/credit",
    response_model=PaymentResponse,
    status_code=201,
    summary="Buy credit through the gateway",
)
async def purchase_credit(
    body: CreditPurchaseRequest,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    return await PaymentService(db).purchase_credit(identity.user_id, body.amount)


@router.get("", response_model=List[PaymentResponse], summary="The caller's payments")
async def list_my_payments(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    return await PaymentService(db).list_user_payments(identity.user_id, limit, offset)


@router.post(
    "/{payment_id}/refund",
    response_model=PaymentResponse,
    summary="Refund part of a completed payment",
    description=(
        "The driver of the booked trip refunds booking payments. A buyer may "
        "refund the unspent part of their own credit purchase."
    ),
)
async def refund_payment(
    payment_id: int,
    body: RefundRequest,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    return await PaymentService(db).refund_payment(
        payment_id, body.amount, body.reason, actor_id=identity.user_id
    )


@router.post(
    "/callback/{external_reference}",
    response_model=CallbackResponse,
    summary="Payment gateway callback",
    description=(
        "Wakes up reconciliation for the payment. The body is only logged; the "
        "outcome always comes from the gateway's own status. Replays are no-ops."
    ),
)
async def payment_callback(
    external_reference: str,
    payload: Optional[dict[str, Any]] = Body(None),
    _: None = Depends(verify_payment_callback),
    db: AsyncSession = Depends(get_db),
):
    raw_status = ((payload or {}).get("transactionInfo") or {}).get("status")
    logger.info(
        "Payment callback received",
        extra_data={"external_reference": external_reference, "status": raw_status},
    )
    result = await PaymentService(db).reconcile_payment(external_reference)
    return CallbackResponse(
        payment_id=result.payment.id,
        status=result.payment.status,
        replayed=result.replayed,
    )
