"""
Payment gateway abstraction
"""
from app.domain.services.gateway.base_gateway import (
    AuthorizationResult,
    BasePaymentGateway,
    GatewayStatus,
)
from app.domain.services.gateway.factory import get_payment_gateway, set_payment_gateway
from app.domain.services.gateway.http_gateway import map_transaction_status

__all__ = [
    "AuthorizationResult",
    "BasePaymentGateway",
    "GatewayStatus",
    "get_payment_gateway",
    "map_transaction_status",
    "set_payment_gateway",
]
