"""
Gateway factory - one process-wide gateway instance built from settings
"""
from __future__ import annotations

import threading

from app.core.circuit_breaker import get_payment_gateway_circuit_breaker
from app.core.logging import get_logger
from app.domain.services.gateway.base_gateway import BasePaymentGateway

logger = get_logger(__name__)

_gateway: BasePaymentGateway | None = None
_lock = threading.Lock()


def get_payment_gateway() -> BasePaymentGateway:
    global _gateway
    if _gateway is None:
        with _lock:
            if _gateway is None:
                from app.domain.services.gateway.http_gateway import HttpPaymentGateway

                _gateway = HttpPaymentGateway(circuit_breaker=get_payment_gateway_circuit_breaker())
                logger.info(
                    "Payment gateway initialised",
                    extra_data={"gateway": _gateway.gateway_name},
                )
    return _gateway


def set_payment_gateway(gateway: BasePaymentGateway | None) -> None:
    """Replace the shared gateway (tests, alternative providers)"""
    global _gateway
    with _lock:
        _gateway = gateway
