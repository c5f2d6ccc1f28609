"""
Tests for the HTTP payment gateway client, against httpx.MockTransport
"""
import json
from decimal import Decimal

import httpx
import pytest

from app.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from app.core.exceptions import (
    CircuitBreakerOpenError,
    PaymentGatewayError,
    ServiceTimeoutError,
)
from app.domain.services.gateway import GatewayStatus, map_transaction_status
from app.domain.services.gateway.http_gateway import HttpPaymentGateway


class RecordingHandler:
    """Answers the token endpoint and delegates everything else"""

    def __init__(self, responder):
        self.responder = responder
        self.requests: list[httpx.Request] = []
        self.token_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/accesstoken/get":
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        self.requests.append(request)
        return self.responder(request)


def _gateway(handler, failure_threshold: int = 5) -> HttpPaymentGateway:
    breaker = CircuitBreaker(
        "test-gateway", CircuitBreakerConfig(failure_threshold=failure_threshold, timeout_seconds=60)
    )
    return HttpPaymentGateway(circuit_breaker=breaker, transport=httpx.MockTransport(handler))


class TestStatusMapping:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("SALE", GatewayStatus.CHARGED),
            ("charged", GatewayStatus.CHARGED),
            ("CANCELLED", GatewayStatus.CANCELLED),
            ("INITIATE", GatewayStatus.PENDING),
            ("REGISTER", GatewayStatus.PENDING),
            ("REJECTED", GatewayStatus.OTHER),
            (None, GatewayStatus.OTHER),
        ],
    )
    def test_provider_states(self, raw, expected):
        assert map_transaction_status(raw) == expected


class TestHttpPaymentGateway:

    @pytest.mark.asyncio
    async def test_authorize_sends_minor_units(self):
        handler = RecordingHandler(
            lambda request: httpx.Response(200, json={"orderId": "order-1", "url": "https://pay/1"})
        )
        gateway = _gateway(handler)

        result = await gateway.authorize(Decimal("249.99"), "NOK", "+4790000001", "order-1", "Seat")

        assert result.external_reference == "order-1"
        assert result.redirect_url == "https://pay/1"
        sent = json.loads(handler.requests[0].content)
        assert sent["transaction"]["amount"] == 24999
        assert sent["customerInfo"] == {"mobileNumber": "+4790000001"}
        assert handler.requests[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_access_token_is_reused(self):
        handler = RecordingHandler(
            lambda request: httpx.Response(200, json={"transactionInfo": {"status": "SALE"}})
        )
        gateway = _gateway(handler)

        await gateway.get_status("order-1")
        await gateway.get_status("order-1")

        assert handler.token_calls == 1

    @pytest.mark.asyncio
    async def test_get_status_reads_transaction_info(self):
        handler = RecordingHandler(
            lambda request: httpx.Response(200, json={"transactionInfo": {"status": "CANCELLED"}})
        )

        assert await _gateway(handler).get_status("order-9") == GatewayStatus.CANCELLED
        assert handler.requests[0].url.path == "/ecomm/v2/payments/order-9/details"

    @pytest.mark.asyncio
    async def test_refund_posts_amount(self):
        handler = RecordingHandler(lambda request: httpx.Response(200, json={}))

        await _gateway(handler).refund("order-2", Decimal("50"), "NOK", "Detour")

        sent = json.loads(handler.requests[0].content)
        assert handler.requests[0].url.path == "/ecomm/v2/payments/order-2/refund"
        assert sent["transaction"] == {"amount": 5000, "transactionText": "Detour"}

    @pytest.mark.asyncio
    async def test_error_status_raises_gateway_error(self):
        handler = RecordingHandler(lambda request: httpx.Response(402, text="declined"))

        with pytest.raises(PaymentGatewayError) as exc_info:
            await _gateway(handler).get_status("order-3")

        assert exc_info.value.details["status_code"] == 402
        assert exc_info.value.details["response_text"] == "declined"

    @pytest.mark.asyncio
    async def test_token_failure_raises_gateway_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, text="bad credentials")

        gateway = HttpPaymentGateway(
            circuit_breaker=CircuitBreaker("test-gateway"),
            transport=httpx.MockTransport(handler),
        )

        with pytest.raises(PaymentGatewayError) as exc_info:
            await gateway.get_status("order-4")

        assert exc_info.value.details["operation"] == "accesstoken"

    @pytest.mark.asyncio
    async def test_network_errors_are_wrapped(self):
        def raise_connect(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(PaymentGatewayError) as exc_info:
            await _gateway(RecordingHandler(raise_connect)).get_status("order-5")

        assert exc_info.value.details["network_error"] is True

    @pytest.mark.asyncio
    async def test_timeouts_are_wrapped(self):
        def raise_timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ServiceTimeoutError):
            await _gateway(RecordingHandler(raise_timeout)).get_status("order-6")

    @pytest.mark.asyncio
    async def test_breaker_opens_after_repeated_failures(self):
        handler = RecordingHandler(lambda request: httpx.Response(500, text="boom"))
        gateway = _gateway(handler, failure_threshold=2)

        for _ in range(2):
            with pytest.raises(PaymentGatewayError):
                await gateway.get_status("order-7")

        with pytest.raises(CircuitBreakerOpenError):
            await gateway.get_status("order-7")
        assert len(handler.requests) == 2
