"""
HTTP payment gateway client (Vipps eCom style API)

Amounts go over the wire in minor units. Every call runs through the
payment gateway circuit breaker; transport errors surface as
PaymentGatewayError or ServiceTimeoutError.
"""
from __future__ import annotations

import time
from decimal import Decimal
from typing import Any, Optional

import httpx

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import PaymentGatewayError, ServiceTimeoutError
from app.core.logging import get_logger
from app.core.money import to_minor_units
from app.domain.services.gateway.base_gateway import (
    AuthorizationResult,
    BasePaymentGateway,
    GatewayStatus,
)

logger = get_logger(__name__)

# Provider transaction states that mean "payer has not acted yet"
_IN_FLIGHT_STATES = {"INITIATE", "REGISTER"}


def map_transaction_status(raw: Optional[str]) -> GatewayStatus:
    """Map a provider transaction status (details call or callback body)"""
    raw = (raw or "").upper()
    if raw in ("CHARGED", "SALE"):
        return GatewayStatus.CHARGED
    if raw == "CANCELLED":
        return GatewayStatus.CANCELLED
    if raw in _IN_FLIGHT_STATES:
        return GatewayStatus.PENDING
    return GatewayStatus.OTHER


class HttpPaymentGateway(BasePaymentGateway):

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._circuit_breaker = circuit_breaker
        self._transport = transport
        self._base_url = settings.PAYMENT_GATEWAY_BASE_URL
        self._timeout = settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def gateway_name(self) -> str:
        return "vipps"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _get_access_token(self, client: httpx.AsyncClient) -> str:
        if self._access_token and time.time() < self._token_expires_at:
            return self._access_token

        response = await client.post(
            "/accesstoken/get",
            headers={
                "client_id": settings.PAYMENT_GATEWAY_CLIENT_ID,
                "client_secret": settings.PAYMENT_GATEWAY_CLIENT_SECRET,
                "Ocp-Apim-Subscription-Key": settings.PAYMENT_GATEWAY_SUBSCRIPTION_KEY,
            },
        )
        if response.status_code != 200:
            raise PaymentGatewayError.from_response("accesstoken", response)

        data = response.json()
        self._access_token = data["access_token"]
        # refresh a minute early
        self._token_expires_at = time.time() + max(int(data.get("expires_in", 3600)) - 60, 0)
        return self._access_token

    def _auth_headers(self, token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Ocp-Apim-Subscription-Key": settings.PAYMENT_GATEWAY_SUBSCRIPTION_KEY,
            "Merchant-Serial-Number": settings.PAYMENT_GATEWAY_MERCHANT_SERIAL_NUMBER,
        }

    async def _call(self, operation: str, method: str, path: str, json: Optional[dict] = None) -> Any:
        async def _send() -> Any:
            try:
                async with self._client() as client:
                    token = await self._get_access_token(client)
                    response = await client.request(
                        method, path, json=json, headers=self._auth_headers(token)
                    )
            except httpx.TimeoutException:
                raise ServiceTimeoutError("payment_gateway", self._timeout)
            except httpx.RequestError as exc:
                raise PaymentGatewayError(
                    f"{operation} network error: {exc}",
                    details={"operation": operation, "network_error": True},
                )

            if response.status_code >= 400:
                raise PaymentGatewayError.from_response(operation, response)
            return response.json() if response.content else {}

        return await self._circuit_breaker.execute(_send)

    async def authorize(
        self,
        amount: Decimal,
        currency: str,
        payer_ref: Optional[str],
        order_ref: str,
        description: str,
    ) -> AuthorizationResult:
        transaction: dict[str, Any] = {
            "amount": to_minor_units(amount, currency),
            "transactionText": description,
            "orderId": order_ref,
        }
        payload: dict[str, Any] = {
            "merchantInfo": {
                "merchantSerialNumber": settings.PAYMENT_GATEWAY_MERCHANT_SERIAL_NUMBER,
                "callbackPrefix": settings.PAYMENT_CALLBACK_PREFIX,
                "fallBack": settings.PAYMENT_FALLBACK_URL,
            },
            "transaction": transaction,
        }
        if payer_ref:
            payload["customerInfo"] = {"mobileNumber": payer_ref}

        data = await self._call("authorize", "POST", "/ecomm/v2/payments", json=payload)
        external_reference = data.get("orderId") or order_ref
        logger.info(
            "Gateway payment initiated",
            extra_data={"order_ref": order_ref, "external_reference": external_reference},
        )
        return AuthorizationResult(
            external_reference=external_reference,
            redirect_url=data.get("url"),
        )

    async def get_status(self, external_reference: str) -> GatewayStatus:
        data = await self._call(
            "get_status", "GET", f"/ecomm/v2/payments/{external_reference}/details"
        )
        return map_transaction_status((data.get("transactionInfo") or {}).get("status"))

    async def refund(
        self,
        external_reference: str,
        amount: Decimal,
        currency: str,
        reason: str,
    ) -> None:
        await self._call(
            "refund",
            "POST",
            f"/ecomm/v2/payments/{external_reference}/refund",
            json={
                "merchantInfo": {
                    "merchantSerialNumber": settings.PAYMENT_GATEWAY_MERCHANT_SERIAL_NUMBER,
                },
                "transaction": {
                    "amount": to_minor_units(amount, currency),
                    "transactionText": reason,
                },
            },
        )
