"""
Outbox Message Model - Transactional Outbox Pattern
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, ForeignKey

from app.core.clock import utcnow
from app.db.database import Base


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class OutboxMessage(Base):
    """Queued user notification with retry tracking"""

    __tablename__ = "outbox_messages"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    event_type = Column(String(50), nullable=False)  # e.g. "booking_confirmed"
    payload = Column(JSON, nullable=False)

    status = Column(
        SQLEnum(
            MessageStatus,
            name="message_status",
            values_callable=lambda x: [e.value for e in x]
        ),
        default=MessageStatus.PENDING,
        nullable=False,
        index=True,
    )
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=5, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)

    last_error = Column(String(1000), nullable=True)
