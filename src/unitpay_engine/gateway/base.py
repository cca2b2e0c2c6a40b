"""Base protocol and types for payment gateway adapters.

All gateway adapters must implement the PaymentGateway protocol. Every
call is bounded by the adapter's timeout; a timeout or transport error
raises ExternalUnavailable, meaning the outcome is unknown.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Protocol


class OrderStatus(str, Enum):
    """Gateway order states the engine distinguishes."""

    CREATED = "CREATED"
    SAVED = "SAVED"
    APPROVED = "APPROVED"
    PAYER_ACTION_REQUIRED = "PAYER_ACTION_REQUIRED"
    COMPLETED = "COMPLETED"
    VOIDED = "VOIDED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: str | None) -> OrderStatus:
        """Decode a gateway status string; absent or unrecognised is UNKNOWN."""
        if not raw:
            return cls.UNKNOWN
        try:
            return cls(raw.upper())
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_pending(self) -> bool:
        return self in {OrderStatus.CREATED, OrderStatus.SAVED, OrderStatus.APPROVED, OrderStatus.PAYER_ACTION_REQUIRED}


@dataclass(frozen=True)
class OrderRequest:
    """What the engine asks the gateway to collect."""

    intent_id: str
    amount: Decimal
    currency: str
    payee_email: str | None
    description: str | None = None


@dataclass(frozen=True)
class OrderResult:
    """Result of creating a gateway order."""

    order_id: str
    status: OrderStatus
    approve_url: str | None = None


@dataclass(frozen=True)
class CaptureResult:
    """Result of capturing an approved order."""

    order_id: str
    status: OrderStatus
    capture_id: str | None = None
    message: str = ""

    @property
    def completed(self) -> bool:
        return self.status == OrderStatus.COMPLETED and self.capture_id is not None


@dataclass(frozen=True)
class OrderStatusResult:
    """Authoritative order state from the gateway."""

    order_id: str
    status: OrderStatus
    capture_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    """Protocol for payment gateway adapters.

    One canonical operation per capability; adapters that front different
    gateway deployments are separate classes picked by configuration.
    """

    name: str

    async def create_order(self, request: OrderRequest) -> OrderResult:
        """Create an order the payer can approve."""
        ...

    async def capture_order(self, order_id: str) -> CaptureResult:
        """Capture an approved order.

        Returns a non-completed result if the order is not APPROVED.
        """
        ...

    async def get_order_status(self, order_id: str) -> OrderStatusResult:
        """Fetch the order's current state."""
        ...

    async def verify_webhook(self, headers: Mapping[str, str], payload: dict[str, Any]) -> bool:
        """Check a webhook delivery really came from the gateway."""
        ...
