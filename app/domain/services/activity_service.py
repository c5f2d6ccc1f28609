"""
Activity Service - per-user activity trail

Records are written inside a SAVEPOINT so a failing insert is rolled back
on its own and never aborts the surrounding business transaction.
"""
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.models.activity_log import ActivityLog

logger = get_logger(__name__)


class ActivityType:
    BOOKING_CREATED = "booking_created"
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_COMPLETED = "booking_completed"
    TRIP_CREATED = "trip_created"
    TRIP_UPDATED = "trip_updated"
    TRIP_STARTED = "trip_started"
    TRIP_COMPLETED = "trip_completed"
    TRIP_CANCELLED = "trip_cancelled"
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    CREDIT_PURCHASED = "credit_purchased"
    REFUND_ISSUED = "refund_issued"


class ActivityService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        user_id: int,
        activity_type: str,
        description: str,
        related_trip_id: Optional[int] = None,
        related_booking_id: Optional[int] = None,
        related_payment_id: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> Optional[ActivityLog]:
        """Best effort: returns None and logs when the row cannot be written"""
        entry = ActivityLog(
            user_id=user_id,
            activity_type=activity_type,
            description=description,
            related_trip_id=related_trip_id,
            related_booking_id=related_booking_id,
            related_payment_id=related_payment_id,
            details=details,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(entry)
        except SQLAlchemyError as e:
            logger.error(
                "Failed to record activity",
                extra_data={
                    "user_id": user_id,
                    "activity_type": activity_type,
                    "error": str(e),
                },
            )
            return None
        return entry
