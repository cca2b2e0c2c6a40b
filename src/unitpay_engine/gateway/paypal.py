"""PayPal Orders v2 adapter.

Talks to the PayPal REST API with httpx. Every request is bounded by the
configured timeout; timeouts and transport errors become
ExternalUnavailable so callers treat the outcome as unknown.
"""

from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Any, Mapping

import httpx

from unitpay_engine.engine_config import GatewayConfig
from unitpay_engine.exceptions import ExternalUnavailable
from unitpay_engine.gateway.base import (
    CaptureResult,
    OrderRequest,
    OrderResult,
    OrderStatus,
    OrderStatusResult,
)

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://api-m.sandbox.paypal.com"
LIVE_URL = "https://api-m.paypal.com"

_VERIFY_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def _money(value: Decimal) -> str:
    return f"{value.quantize(Decimal('0.01'))}"


def _first_capture(order: dict[str, Any]) -> str | None:
    """Capture id from an order body, if the order has one."""
    for unit in order.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0].get("id")
    return None


class PayPalGateway:
    """PayPal REST gateway.

    Args:
        config: Gateway configuration (credentials, sandbox flag, timeout).
        client: Optional pre-built httpx.AsyncClient (tests inject a
            MockTransport here).
    """

    name = "paypal"

    def __init__(
        self,
        config: GatewayConfig,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._webhook_id = config.webhook_id or None
        self._base_url = SANDBOX_URL if config.sandbox else LIVE_URL
        self._client = client
        self._token: str | None = None
        self._token_expires_at = 0.0
        if self._webhook_id is None and not config.sandbox:
            logger.warning("PayPal webhook_id not configured; live webhooks will be rejected")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._config.timeout_seconds,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, operation: str, **kwargs: Any) -> dict[str, Any]:
        client = await self._get_client()
        headers = dict(kwargs.pop("headers", {}))
        if "auth" not in kwargs:
            headers["Authorization"] = f"Bearer {await self._access_token()}"
        try:
            response = await client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise ExternalUnavailable(self.name, operation, "timeout") from e
        except httpx.HTTPError as e:
            raise ExternalUnavailable(self.name, operation, str(e)) from e

        if response.status_code >= 500:
            raise ExternalUnavailable(self.name, operation, f"HTTP {response.status_code}")
        if response.status_code == 401:
            self._token = None
        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}
        if response.status_code >= 400:
            logger.warning(
                "PayPal %s returned %s: %s",
                operation,
                response.status_code,
                body.get("name") or body.get("message"),
            )
            body.setdefault("_http_status", response.status_code)
        return body

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        body = await self._request(
            "POST",
            "/v1/oauth2/token",
            "oauth_token",
            auth=(self._config.client_id, self._config.client_secret),
            data={"grant_type": "client_credentials"},
        )
        token = body.get("access_token")
        if not token:
            raise ExternalUnavailable(self.name, "oauth_token", "no access token in response")
        self._token = token
        # Refresh a minute early
        self._token_expires_at = time.monotonic() + max(int(body.get("expires_in", 0)) - 60, 0)
        return token

    async def create_order(self, request: OrderRequest) -> OrderResult:
        unit: dict[str, Any] = {
            "reference_id": request.intent_id,
            "custom_id": request.intent_id,
            "amount": {"currency_code": request.currency, "value": _money(request.amount)},
        }
        if request.payee_email:
            unit["payee"] = {"email_address": request.payee_email}
        if request.description:
            unit["description"] = request.description[:127]

        body = await self._request(
            "POST",
            "/v2/checkout/orders",
            "create_order",
            json={"intent": "CAPTURE", "purchase_units": [unit]},
            headers={"PayPal-Request-Id": f"order-{request.intent_id}-{int(time.time())}"},
        )
        order_id = body.get("id")
        if not order_id:
            raise ExternalUnavailable(self.name, "create_order", f"no order id ({body.get('name', 'error')})")
        approve_url = next(
            (link.get("href") for link in body.get("links") or [] if link.get("rel") in {"approve", "payer-action"}),
            None,
        )
        return OrderResult(order_id=order_id, status=OrderStatus.parse(body.get("status")), approve_url=approve_url)

    async def capture_order(self, order_id: str) -> CaptureResult:
        current = await self.get_order_status(order_id)
        if current.status == OrderStatus.COMPLETED:
            return CaptureResult(order_id=order_id, status=current.status, capture_id=current.capture_id)
        if current.status != OrderStatus.APPROVED:
            return CaptureResult(
                order_id=order_id,
                status=current.status,
                message=f"order is {current.status.value}, not APPROVED",
            )

        body = await self._request(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            "capture_order",
            json={},
            headers={"PayPal-Request-Id": f"capture-{order_id}"},
        )
        return CaptureResult(
            order_id=order_id,
            status=OrderStatus.parse(body.get("status")),
            capture_id=_first_capture(body),
            message=str(body.get("message", "")),
        )

    async def get_order_status(self, order_id: str) -> OrderStatusResult:
        body = await self._request("GET", f"/v2/checkout/orders/{order_id}", "get_order_status")
        if body.get("_http_status") == 404:
            return OrderStatusResult(order_id=order_id, status=OrderStatus.UNKNOWN, raw=body)
        return OrderStatusResult(
            order_id=order_id,
            status=OrderStatus.parse(body.get("status")),
            capture_id=_first_capture(body),
            raw=body,
        )

    async def verify_webhook(self, headers: Mapping[str, str], payload: dict[str, Any]) -> bool:
        if self._webhook_id is None:
            return self._config.sandbox
        lowered = {k.lower(): v for k, v in headers.items()}
        missing = [h for h in _VERIFY_HEADERS.values() if h not in lowered]
        if missing:
            logger.warning("PayPal webhook missing headers: %s", ", ".join(missing))
            return False
        body = await self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            "verify_webhook",
            json={
                **{field: lowered[header] for field, header in _VERIFY_HEADERS.items()},
                "webhook_id": self._webhook_id,
                "webhook_event": payload,
            },
        )
        return body.get("verification_status") == "SUCCESS"
