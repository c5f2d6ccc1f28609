"""
API tests for payments, the gateway callback and credit
"""
from decimal import Decimal

import pytest

from app.core.config import settings
from app.core.exceptions import PaymentGatewayError
from app.domain.services.gateway import GatewayStatus
from tests.conftest import identity_headers

CALLBACK_HEADERS = {"X-Callback-Token": "test-callback-secret"}


async def _purchase(test_client, headers, amount: str = "300") -> dict:
    response = await test_client.post("/api/payments/credit", json={"amount": amount}, headers=headers)
    assert response.status_code == 201
    return response.json()


class TestPaymentEndpoints:

    @pytest.mark.asyncio
    async def test_credit_purchase_returns_redirect(self, test_client, fake_gateway, passenger):
        payment = await _purchase(test_client, identity_headers(passenger))

        assert payment["status"] == "processing"
        assert payment["purpose"] == "credit_purchase"
        assert payment["redirect_url"].startswith("https://pay.example/")

    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self, test_client, fake_gateway, passenger):
        response = await test_client.post(
            "/api/payments/credit", json={"amount": "0"}, headers=identity_headers(passenger)
        )

        assert response.status_code == 422
        assert fake_gateway.authorized == []

    @pytest.mark.asyncio
    async def test_gateway_outage_is_503(self, test_client, fake_gateway, passenger):
        fake_gateway.fail_authorize = PaymentGatewayError("timeout")

        response = await test_client.post(
            "/api/payments/credit", json={"amount": "100"}, headers=identity_headers(passenger)
        )

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "ERR_5001"

    @pytest.mark.asyncio
    async def test_trip_payment_for_booking(self, test_client, fake_gateway, trip, passenger):
        headers = identity_headers(passenger)
        booking = await test_client.post(
            "/api/bookings",
            json={"trip_id": trip.id, "seats": 1, "payment_method": "external_gateway"},
            headers=headers,
        )

        response = await test_client.post(
            "/api/payments/trip", json={"booking_id": booking.json()["id"]}, headers=headers
        )

        assert response.status_code == 201
        assert response.json()["booking_id"] == booking.json()["id"]
        assert Decimal(response.json()["amount"]) == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_list_payments(self, test_client, fake_gateway, passenger, driver):
        await _purchase(test_client, identity_headers(passenger))

        mine = await test_client.get("/api/payments", headers=identity_headers(passenger))
        others = await test_client.get("/api/payments", headers=identity_headers(driver))

        assert len(mine.json()) == 1
        assert others.json() == []


class TestPaymentCallback:

    @pytest.mark.asyncio
    async def test_callback_completes_purchase_and_credits(self, test_client, fake_gateway, passenger):
        headers = identity_headers(passenger)
        payment = await _purchase(test_client, headers)
        fake_gateway.statuses[payment["external_reference"]] = GatewayStatus.CHARGED

        response = await test_client.post(
            f"/api/payments/callback/{payment['external_reference']}",
            json={"transactionInfo": {"status": "SALE"}},
            headers=CALLBACK_HEADERS,
        )

        assert response.status_code == 200
        assert response.json() == {"payment_id": payment["id"], "status": "completed", "replayed": False}

        balance = await test_client.get("/api/credits/balance", headers=headers)
        assert Decimal(balance.json()["balance"]) == Decimal("300.00")
        assert balance.json()["currency"] == settings.DEFAULT_CURRENCY

    @pytest.mark.asyncio
    async def test_replayed_callback_is_acknowledged(self, test_client, fake_gateway, passenger):
        headers = identity_headers(passenger)
        payment = await _purchase(test_client, headers)
        url = f"/api/payments/callback/{payment['external_reference']}"
        fake_gateway.statuses[payment["external_reference"]] = GatewayStatus.CHARGED
        body = {"transactionInfo": {"status": "CHARGED"}}

        await test_client.post(url, json=body, headers=CALLBACK_HEADERS)
        replay = await test_client.post(url, json=body, headers=CALLBACK_HEADERS)

        assert replay.status_code == 200
        assert replay.json()["replayed"] is True
        balance = await test_client.get("/api/credits/balance", headers=headers)
        assert Decimal(balance.json()["balance"]) == Decimal("300.00")

    @pytest.mark.asyncio
    async def test_callback_without_status_polls_gateway(self, test_client, fake_gateway, passenger):
        payment = await _purchase(test_client, identity_headers(passenger))
        fake_gateway.statuses[payment["external_reference"]] = GatewayStatus.CANCELLED

        response = await test_client.post(
            f"/api/payments/callback/{payment['external_reference']}",
            headers=CALLBACK_HEADERS,
        )

        assert response.json()["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_callback_body_status_is_not_trusted(
        self, test_client, fake_gateway, passenger, monkeypatch
    ):
        monkeypatch.setattr(settings, "PAYMENT_CALLBACK_SECRET", "")
        headers = identity_headers(passenger)
        payment = await _purchase(test_client, headers, amount="5000")

        response = await test_client.post(
            f"/api/payments/callback/{payment['external_reference']}",
            json={"transactionInfo": {"status": "CHARGED"}},
        )

        # the gateway still reports the payment as in flight
        assert response.status_code == 200
        assert response.json()["status"] == "processing"
        balance = await test_client.get("/api/credits/balance", headers=headers)
        assert Decimal(balance.json()["balance"]) == Decimal("0")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [{}, {"X-Callback-Token": "wrong"}])
    async def test_callback_requires_token(self, test_client, fake_gateway, passenger, headers):
        payment = await _purchase(test_client, identity_headers(passenger))

        response = await test_client.post(
            f"/api/payments/callback/{payment['external_reference']}",
            json={"transactionInfo": {"status": "SALE"}},
            headers=headers,
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_callback_for_unknown_reference_is_404(self, test_client, fake_gateway):
        response = await test_client.post(
            "/api/payments/callback/unknown-ref",
            json={"transactionInfo": {"status": "SALE"}},
            headers=CALLBACK_HEADERS,
        )

        assert response.status_code == 404


class TestRefundEndpoint:

    @pytest.mark.asyncio
    async def test_driver_refunds_trip_payment(self, test_client, fake_gateway, trip, driver, passenger):
        passenger_headers = identity_headers(passenger)
        driver_headers = identity_headers(driver)
        booking = await test_client.post(
            "/api/bookings",
            json={"trip_id": trip.id, "seats": 2, "payment_method": "external_gateway"},
            headers=passenger_headers,
        )
        payment = await test_client.post(
            "/api/payments/trip", json={"booking_id": booking.json()["id"]}, headers=passenger_headers
        )
        fake_gateway.statuses[payment.json()["external_reference"]] = GatewayStatus.CHARGED
        await test_client.post(
            f"/api/payments/callback/{payment.json()['external_reference']}",
            json={"transactionInfo": {"status": "SALE"}},
            headers=CALLBACK_HEADERS,
        )

        denied = await test_client.post(
            f"/api/payments/{payment.json()['id']}/refund",
            json={"amount": "50", "reason": "Please"},
            headers=passenger_headers,
        )
        refunded = await test_client.post(
            f"/api/payments/{payment.json()['id']}/refund",
            json={"amount": "50", "reason": "Detour"},
            headers=driver_headers,
        )

        assert denied.status_code == 403
        assert refunded.status_code == 200
        assert Decimal(refunded.json()["refunded_amount"]) == Decimal("50.00")
        assert len(fake_gateway.refunds) == 1


class TestCreditEndpoints:

    @pytest.mark.asyncio
    async def test_empty_balance(self, test_client, passenger):
        response = await test_client.get("/api/credits/balance", headers=identity_headers(passenger))

        assert response.status_code == 200
        assert response.json()["user_id"] == passenger.id
        assert Decimal(response.json()["balance"]) == Decimal("0")

    @pytest.mark.asyncio
    async def test_history_newest_first(self, test_client, trip, passenger, fund_credit):
        headers = identity_headers(passenger)
        await fund_credit(passenger.id, Decimal("500"))
        await test_client.post(
            "/api/bookings",
            json={"trip_id": trip.id, "seats": 1, "payment_method": "credit"},
            headers=headers,
        )

        response = await test_client.get("/api/credits/history", headers=headers)

        entries = response.json()
        assert [e["sequence"] for e in entries] == [2, 1]
        assert [e["transaction_type"] for e in entries] == ["payment", "purchase"]
        assert Decimal(entries[0]["balance_after"]) == Decimal("400.00")
