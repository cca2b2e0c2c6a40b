"""Stub gateway for local development and testing.

Replace with the PayPal adapter (or another real gateway) for production.
"""

from __future__ import annotations

import uuid
from typing import Any, Mapping

from unitpay_engine.exceptions import ExternalUnavailable
from unitpay_engine.gateway.base import (
    CaptureResult,
    OrderRequest,
    OrderResult,
    OrderStatus,
    OrderStatusResult,
)


class StubGateway:
    """In-memory gateway.

    Orders start CREATED. Tests drive them with ``approve``/``void`` and
    can simulate an outage with ``unavailable = True``.
    """

    name = "stub"

    def __init__(self, auto_approve: bool = False):
        """Initialize stub gateway.

        Args:
            auto_approve: If True, new orders are immediately APPROVED,
                as if the payer approved in the popup.
        """
        self.auto_approve = auto_approve
        self.unavailable = False
        self.reject_webhooks = False
        self._orders: dict[str, dict[str, Any]] = {}

    def _check_available(self, operation: str) -> None:
        if self.unavailable:
            raise ExternalUnavailable(self.name, operation, "simulated timeout")

    async def create_order(self, request: OrderRequest) -> OrderResult:
        """Create order (stub implementation)."""
        self._check_available("create_order")
        order_id = f"STUB-{uuid.uuid4().hex[:16].upper()}"
        status = OrderStatus.APPROVED if self.auto_approve else OrderStatus.CREATED
        self._orders[order_id] = {"request": request, "status": status, "capture_id": None}
        return OrderResult(
            order_id=order_id,
            status=status,
            approve_url=f"https://stub.gateway.local/checkout/{order_id}",
        )

    async def capture_order(self, order_id: str) -> CaptureResult:
        """Capture an approved order."""
        self._check_available("capture_order")
        record = self._orders.get(order_id)
        if record is None:
            return CaptureResult(order_id=order_id, status=OrderStatus.UNKNOWN, message="order not found")
        if record["status"] != OrderStatus.APPROVED:
            return CaptureResult(
                order_id=order_id,
                status=record["status"],
                message=f"order is {record['status'].value}, not APPROVED",
            )
        capture_id = f"CAP-{uuid.uuid4().hex[:16].upper()}"
        record["status"] = OrderStatus.COMPLETED
        record["capture_id"] = capture_id
        return CaptureResult(order_id=order_id, status=OrderStatus.COMPLETED, capture_id=capture_id)

    async def get_order_status(self, order_id: str) -> OrderStatusResult:
        """Get status of an order."""
        self._check_available("get_order_status")
        record = self._orders.get(order_id)
        if record is None:
            return OrderStatusResult(order_id=order_id, status=OrderStatus.UNKNOWN)
        return OrderStatusResult(
            order_id=order_id,
            status=record["status"],
            capture_id=record["capture_id"],
        )

    async def verify_webhook(self, headers: Mapping[str, str], payload: dict[str, Any]) -> bool:
        return not self.reject_webhooks

    # Test helpers

    def approve(self, order_id: str) -> None:
        """Simulate the payer approving the order."""
        self._orders[order_id]["status"] = OrderStatus.APPROVED

    def void(self, order_id: str) -> None:
        """Simulate the payer abandoning the order."""
        self._orders[order_id]["status"] = OrderStatus.VOIDED

    def complete(self, order_id: str) -> str:
        """Simulate a capture that happened outside the engine."""
        capture_id = f"CAP-{uuid.uuid4().hex[:16].upper()}"
        self._orders[order_id]["status"] = OrderStatus.COMPLETED
        self._orders[order_id]["capture_id"] = capture_id
        return capture_id
