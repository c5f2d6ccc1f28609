"""
FastAPI dependency resolving the calling user

Authentication happens upstream; the gateway in front of this service puts
the authenticated user id in ``settings.IDENTITY_HEADER``. The dependency
only checks that the user exists and is active.

Usage:
    @router.post("/bookings")
    async def create_booking(
        identity: Identity = Depends(get_identity),
        db: AsyncSession = Depends(get_db),
    ):
        ...
"""
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.user import User, UserStatus

logger = get_logger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: int
    is_driver: bool
    status: UserStatus


async def get_identity(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Identity:
    """
    Resolve the caller from the identity header.

    - Missing or malformed header -> 401
    - Unknown or inactive user -> 403
    """
    raw = request.headers.get(settings.IDENTITY_HEADER)
    if not raw:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing identity header",
        )
    try:
        user_id = int(raw)
    except ValueError:
        logger.warning("Malformed identity header", extra_data={"header_value": raw[:32]})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Malformed identity header",
        )

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        logger.warning(
            "Request from unknown or inactive user",
            extra_data={"user_id": user_id},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is not active",
        )

    return Identity(user_id=user.id, is_driver=user.is_driver, status=user.status)
