"""
Credit API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.identity import Identity, get_identity
from app.core.config import settings
from app.db.database import get_db
from app.db.models.credit_transaction import CreditTransactionType
from app.domain.services.ledger_service import LedgerService

router = APIRouter()


class BalanceResponse(BaseModel):
    user_id: int
    balance: Decimal
    currency: str


class CreditTransactionResponse(BaseModel):
    id: int
    sequence: int
    amount: Decimal
    transaction_type: CreditTransactionType
    balance_before: Decimal
    balance_after: Decimal
    description: Optional[str]
    booking_id: Optional[int]
    payment_id: Optional[int]
    created_at: datetime

    class Config:
        from_attributes = True


@router.get("/balance", response_model=BalanceResponse, summary="Current credit balance")
async def get_balance(
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    balance = await LedgerService(db).get_balance(identity.user_id)
    return BalanceResponse(
        user_id=identity.user_id,
        balance=balance,
        currency=settings.DEFAULT_CURRENCY,
    )


@router.get(
    "/history",
    response_model=List[CreditTransactionResponse],
    summary="Credit ledger, newest first",
)
async def get_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    return await LedgerService(db).get_history(identity.user_id, limit, offset)
