"""
Outbox Service - Transactional Outbox Pattern for user notifications

Business operations call ``notify`` after their own commit. The message is
stored in the outbox table and delivered later by a Celery worker, so a
notification problem can never undo a booking or a payment.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, List, Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.core.logging import get_logger
from app.db.models.outbox_message import OutboxMessage, MessageStatus

logger = get_logger(__name__)


class NotificationEvent:
    BOOKING_CREATED = "booking_created"
    BOOKING_REQUEST = "booking_request"
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"
    TRIP_CANCELLED = "trip_cancelled"
    TRIP_COMPLETED = "trip_completed"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    REFUND_ISSUED = "refund_issued"


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Exponential backoff ``base_seconds * 2**retry_count`` capped at
    ``max_backoff_seconds``, without computing huge powers for large counts.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # smallest n with base * 2**n >= max
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    threshold = (required_multiplier - 1).bit_length()

    if retry_count >= threshold:
        return max_backoff_seconds

    return min(base_seconds * (1 << retry_count), max_backoff_seconds)


class OutboxService:
    """Queues notifications and tracks their delivery attempts"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def queue_message(
        self,
        user_id: int,
        event_type: str,
        payload: dict[str, Any],
    ) -> OutboxMessage:
        """Add a pending message to the session; the caller commits"""
        message = OutboxMessage(
            user_id=user_id,
            event_type=event_type,
            payload=payload,
            status=MessageStatus.PENDING,
        )
        self.db.add(message)
        return message

    async def notify(
        self,
        user_id: int,
        event_type: str,
        payload: dict[str, Any],
    ) -> Optional[OutboxMessage]:
        """
        Fire-and-forget notification, called after the business commit.

        Failures are logged and swallowed; the caller's outcome stands.
        """
        try:
            message = await self.queue_message(user_id, event_type, payload)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Failed to queue notification",
                extra_data={"user_id": user_id, "event_type": event_type, "error": str(e)},
            )
            return None

        logger.debug(
            "Notification queued",
            extra_data={"user_id": user_id, "event_type": event_type, "message_id": message.id},
        )
        return message

    async def get_pending_messages(
        self,
        limit: int = 100,
        now: Optional[datetime] = None,
    ) -> List[OutboxMessage]:
        """Pending messages whose retry time (if any) has come"""
        now = now or utcnow()
        result = await self.db.execute(
            select(OutboxMessage)
            .where(
                OutboxMessage.status == MessageStatus.PENDING,
                (OutboxMessage.next_retry_at.is_(None)) | (OutboxMessage.next_retry_at <= now),
            )
            .order_by(OutboxMessage.created_at, OutboxMessage.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _get(self, message_id: int) -> Optional[OutboxMessage]:
        result = await self.db.execute(
            select(OutboxMessage).where(OutboxMessage.id == message_id)
        )
        return result.scalar_one_or_none()

    async def mark_as_processing(self, message_id: int) -> bool:
        """Claim a pending message; False if another worker got there first"""
        message = await self._get(message_id)
        if not message or message.status != MessageStatus.PENDING:
            return False
        message.status = MessageStatus.PROCESSING
        await self.db.commit()
        return True

    async def mark_as_sent(self, message_id: int) -> None:
        message = await self._get(message_id)
        if message:
            message.status = MessageStatus.SENT
            message.processed_at = utcnow()
            await self.db.commit()

    async def mark_as_failed(self, message_id: int, error: str) -> None:
        """Count the attempt; schedule a retry with backoff or give up"""
        message = await self._get(message_id)
        if not message:
            return

        message.retry_count += 1
        message.last_error = error[:1000]

        if message.retry_count >= message.max_retries:
            message.status = MessageStatus.FAILED
            message.processed_at = utcnow()
            logger.warning(
                "Notification gave up after max retries",
                extra_data={"message_id": message_id, "retry_count": message.retry_count},
            )
        else:
            message.status = MessageStatus.PENDING
            backoff_seconds = _calculate_backoff_seconds(
                message.retry_count,
                base_seconds=settings.OUTBOX_RETRY_BASE_SECONDS,
                max_backoff_seconds=settings.OUTBOX_MAX_BACKOFF_SECONDS,
            )
            message.next_retry_at = utcnow() + timedelta(seconds=backoff_seconds)

        await self.db.commit()

    async def delete_processed_before(self, cutoff: datetime) -> int:
        """Remove sent and given-up messages processed before ``cutoff``"""
        result = await self.db.execute(
            delete(OutboxMessage).where(
                OutboxMessage.status.in_([MessageStatus.SENT, MessageStatus.FAILED]),
                OutboxMessage.processed_at < cutoff,
            )
        )
        await self.db.commit()
        return result.rowcount or 0
