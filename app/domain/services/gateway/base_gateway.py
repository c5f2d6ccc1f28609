"""
Payment gateway interface

Business logic depends only on this interface; the HTTP client and the
test fake both implement it.
"""
from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


class GatewayStatus(str, enum.Enum):
    CHARGED = "CHARGED"
    CANCELLED = "CANCELLED"
    # The payer has not finished yet; nothing to reconcile
    PENDING = "PENDING"
    OTHER = "OTHER"


@dataclass(frozen=True)
class AuthorizationResult:
    external_reference: str
    redirect_url: Optional[str] = None


class BasePaymentGateway(ABC):
    """Authorize, query and refund payments with an external provider"""

    @property
    @abstractmethod
    def gateway_name(self) -> str:
        ...

    @abstractmethod
    async def authorize(
        self,
        amount: Decimal,
        currency: str,
        payer_ref: Optional[str],
        order_ref: str,
        description: str,
    ) -> AuthorizationResult:
        """
        Start a payment and return the provider's reference and the URL the
        payer is sent to.

        Raises:
            PaymentGatewayError: the provider rejected the request or could
                not be reached.
        """

    @abstractmethod
    async def get_status(self, external_reference: str) -> GatewayStatus:
        """Current outcome of a previously authorized payment"""

    @abstractmethod
    async def refund(
        self,
        external_reference: str,
        amount: Decimal,
        currency: str,
        reason: str,
    ) -> None:
        """Refund part or all of a charged payment"""
