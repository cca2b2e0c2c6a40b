"""Tests for the PayPal gateway adapter against a mocked HTTP transport."""

import json
from decimal import Decimal

import httpx
import pytest

from unitpay_engine.engine_config import GatewayConfig
from unitpay_engine.exceptions import ExternalUnavailable
from unitpay_engine.gateway import OrderRequest, OrderStatus, PayPalGateway
from unitpay_engine.gateway.paypal import SANDBOX_URL

pytestmark = pytest.mark.asyncio

WEBHOOK_HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api.paypal.com/cert.pem",
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-TRANSMISSION-TIME": "2024-01-01T00:00:00Z",
}


class FakePayPal:
    """Minimal PayPal REST double keyed by (method, path)."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.order_status = "APPROVED"
        self.fail_with: int | None = None
        self.timeout = False
        self.verification_status = "SUCCESS"

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "token-1", "expires_in": 3600})
        if self.timeout:
            raise httpx.ReadTimeout("timed out", request=request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"name": "INTERNAL_SERVICE_ERROR"})
        if path == "/v2/checkout/orders" and request.method == "POST":
            return httpx.Response(
                201,
                json={
                    "id": "ORDER-1",
                    "status": "CREATED",
                    "links": [{"rel": "approve", "href": "https://www.sandbox.paypal.com/checkoutnow?token=ORDER-1"}],
                },
            )
        if path == "/v2/checkout/orders/MISSING":
            return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})
        if path == "/v2/checkout/orders/ORDER-1" and request.method == "GET":
            body = {"id": "ORDER-1", "status": self.order_status}
            if self.order_status == "COMPLETED":
                body["purchase_units"] = [{"payments": {"captures": [{"id": "CAP-0"}]}}]
            return httpx.Response(200, json=body)
        if path == "/v2/checkout/orders/ORDER-1/capture":
            return httpx.Response(
                201,
                json={
                    "id": "ORDER-1",
                    "status": "COMPLETED",
                    "purchase_units": [{"payments": {"captures": [{"id": "CAP-1", "status": "COMPLETED"}]}}],
                },
            )
        if path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": self.verification_status})
        return httpx.Response(404, json={"name": "NOT_FOUND"})

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


@pytest.fixture
def fake() -> FakePayPal:
    return FakePayPal()


def make_gateway(fake: FakePayPal, **config) -> PayPalGateway:
    params = {"provider": "paypal", "client_id": "client", "client_secret": "secret"}
    params.update(config)
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake.handler), base_url=SANDBOX_URL)
    return PayPalGateway(GatewayConfig(**params), client=client)


def order_request(**overrides) -> OrderRequest:
    params = dict(
        intent_id="intent-1",
        amount=Decimal("100.5"),
        currency="USD",
        payee_email="shop@merchant.example",
        description="Order #42",
    )
    params.update(overrides)
    return OrderRequest(**params)


class TestOrders:
    async def test_create_order(self, fake):
        gateway = make_gateway(fake)

        result = await gateway.create_order(order_request())

        assert result.order_id == "ORDER-1"
        assert result.status == OrderStatus.CREATED
        assert result.approve_url.endswith("token=ORDER-1")
        create = fake.requests[-1]
        assert create.headers["Authorization"] == "Bearer token-1"
        body = json.loads(create.content)
        unit = body["purchase_units"][0]
        assert body["intent"] == "CAPTURE"
        assert unit["amount"] == {"currency_code": "USD", "value": "100.50"}
        assert unit["payee"] == {"email_address": "shop@merchant.example"}
        assert unit["custom_id"] == "intent-1"
        await gateway.aclose()

    async def test_token_reused_between_calls(self, fake):
        gateway = make_gateway(fake)

        await gateway.create_order(order_request())
        await gateway.get_order_status("ORDER-1")

        assert fake.paths().count("/v1/oauth2/token") == 1
        await gateway.aclose()

    async def test_capture_approved_order(self, fake):
        gateway = make_gateway(fake)

        capture = await gateway.capture_order("ORDER-1")

        assert capture.completed is True
        assert capture.capture_id == "CAP-1"
        assert "/v2/checkout/orders/ORDER-1/capture" in fake.paths()
        await gateway.aclose()

    async def test_capture_skips_unapproved_order(self, fake):
        fake.order_status = "PAYER_ACTION_REQUIRED"
        gateway = make_gateway(fake)

        capture = await gateway.capture_order("ORDER-1")

        assert capture.completed is False
        assert capture.status == OrderStatus.PAYER_ACTION_REQUIRED
        assert "/v2/checkout/orders/ORDER-1/capture" not in fake.paths()
        await gateway.aclose()

    async def test_capture_of_completed_order_is_idempotent(self, fake):
        fake.order_status = "COMPLETED"
        gateway = make_gateway(fake)

        capture = await gateway.capture_order("ORDER-1")

        assert capture.completed is True
        assert capture.capture_id == "CAP-0"
        assert "/v2/checkout/orders/ORDER-1/capture" not in fake.paths()
        await gateway.aclose()

    async def test_unknown_order(self, fake):
        gateway = make_gateway(fake)
        status = await gateway.get_order_status("MISSING")
        assert status.status == OrderStatus.UNKNOWN
        await gateway.aclose()


class TestFailures:
    async def test_server_error_is_unavailable(self, fake):
        fake.fail_with = 503
        gateway = make_gateway(fake)

        with pytest.raises(ExternalUnavailable):
            await gateway.get_order_status("ORDER-1")
        await gateway.aclose()

    async def test_timeout_is_unavailable(self, fake):
        fake.timeout = True
        gateway = make_gateway(fake)

        with pytest.raises(ExternalUnavailable) as exc_info:
            await gateway.create_order(order_request())

        assert "timeout" in str(exc_info.value)
        await gateway.aclose()


class TestWebhookVerification:
    async def test_sandbox_without_webhook_id_accepts(self, fake):
        gateway = make_gateway(fake)
        assert await gateway.verify_webhook({}, {"id": "WH-1"}) is True
        assert fake.requests == []

    async def test_live_without_webhook_id_rejects(self, fake):
        gateway = make_gateway(fake, sandbox=False)
        assert await gateway.verify_webhook(WEBHOOK_HEADERS, {"id": "WH-1"}) is False

    async def test_signature_verified_remotely(self, fake):
        gateway = make_gateway(fake, webhook_id="WEBHOOK-1")

        assert await gateway.verify_webhook(WEBHOOK_HEADERS, {"id": "WH-1"}) is True

        verify = fake.requests[-1]
        body = json.loads(verify.content)
        assert body["webhook_id"] == "WEBHOOK-1"
        assert body["transmission_id"] == "tx-1"
        assert body["webhook_event"] == {"id": "WH-1"}
        await gateway.aclose()

    async def test_failed_signature(self, fake):
        fake.verification_status = "FAILURE"
        gateway = make_gateway(fake, webhook_id="WEBHOOK-1")
        assert await gateway.verify_webhook(WEBHOOK_HEADERS, {"id": "WH-1"}) is False
        await gateway.aclose()

    async def test_missing_headers(self, fake):
        gateway = make_gateway(fake, webhook_id="WEBHOOK-1")
        assert await gateway.verify_webhook({"PAYPAL-AUTH-ALGO": "x"}, {"id": "WH-1"}) is False
        assert fake.requests == []
