"""
User Model - Passengers and Drivers
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Boolean

from app.core.clock import utcnow
from app.db.database import Base


class UserStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class User(Base):
    """Account holder; a driver offers trips, anyone may book seats"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=True, index=True)
    phone_number = Column(String(20), unique=True, nullable=True, index=True)
    is_driver = Column(Boolean, default=False, nullable=False)
    status = Column(
        SQLEnum(
            UserStatus,
            name="user_status",
            values_callable=lambda x: [e.value for e in x]
        ),
        default=UserStatus.ACTIVE,
        nullable=False,
    )

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE
