"""
Activity Log Model - per-user history of business events
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.types import JSON

from app.core.clock import utcnow
from app.db.database import Base


class ActivityLog(Base):
    """What a user did or had happen to them: booked, cancelled, paid, refunded"""

    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    activity_type = Column(String(50), nullable=False, index=True)
    description = Column(String(500), nullable=False)

    related_trip_id = Column(Integer, ForeignKey("trips.id"), nullable=True)
    related_booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True)
    related_payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)

    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
