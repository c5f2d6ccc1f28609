"""
Shared-secret check for payment gateway callbacks

The gateway sends ``PAYMENT_CALLBACK_SECRET`` back in the
``X-Callback-Token`` header on every callback.
"""
import hmac

from fastapi import Header, HTTPException, status

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


async def verify_payment_callback(
    x_callback_token: str | None = Header(None),
) -> None:
    """
    - ``PAYMENT_CALLBACK_SECRET`` empty -> not verified (warned at startup)
    - header missing or wrong -> 403
    """
    expected = settings.PAYMENT_CALLBACK_SECRET
    if not expected:
        return

    if not x_callback_token:
        logger.warning("Payment callback without X-Callback-Token header")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing callback token",
        )

    if not hmac.compare_digest(x_callback_token, expected):
        logger.warning("Payment callback with wrong token")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid callback token",
        )
