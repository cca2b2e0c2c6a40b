"""Gateway webhook parsing.

Converts raw PayPal webhook bodies into typed GatewaySignal values. Parsing
is total: anything unrecognised or malformed decodes to SignalKind.UNKNOWN
rather than raising, so the reconciler can log and drop it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SignalKind(str, Enum):
    """Gateway signals the reconciler acts on."""

    CAPTURE_COMPLETED = "capture_completed"
    CAPTURE_DENIED = "capture_denied"
    CAPTURE_REFUNDED = "capture_refunded"
    CAPTURE_REVERSED = "capture_reversed"
    ORDER_CANCELLED = "order_cancelled"
    UNKNOWN = "unknown"


_CANCELLATION_EVENTS = {
    "CHECKOUT.ORDER.CANCELLED",
    "CHECKOUT.ORDER.VOIDED",
    "CHECKOUT.PAYMENT.CANCELLED",
}

_CAPTURE_EVENTS = {
    "PAYMENT.CAPTURE.COMPLETED": SignalKind.CAPTURE_COMPLETED,
    "PAYMENT.CAPTURE.DENIED": SignalKind.CAPTURE_DENIED,
    "PAYMENT.CAPTURE.REFUNDED": SignalKind.CAPTURE_REFUNDED,
    "PAYMENT.CAPTURE.REVERSED": SignalKind.CAPTURE_REVERSED,
}


@dataclass(frozen=True)
class GatewaySignal:
    """One decoded webhook delivery.

    ``order_id`` and ``capture_id`` are the only linkage the reconciler
    trusts; either may be absent.
    """

    kind: SignalKind
    event_type: str
    event_id: str | None = None
    order_id: str | None = None
    capture_id: str | None = None
    detail: str = ""
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def linkable(self) -> bool:
        return bool(self.order_id or self.capture_id)


def _str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _related_order_id(resource: dict[str, Any]) -> str | None:
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    return _str(related.get("order_id"))


def _linked_capture_id(resource: dict[str, Any]) -> str | None:
    """Capture id a refund points back to via its ``up``/``capture`` link."""
    for link in resource.get("links") or []:
        if not isinstance(link, dict) or link.get("rel") not in {"up", "capture"}:
            continue
        href = _str(link.get("href"))
        if href:
            return href.rstrip("/").rsplit("/", 1)[-1]
    return None


def parse_paypal_event(payload: Any) -> GatewaySignal:
    """Decode a PayPal webhook body.

    Args:
        payload: Parsed JSON body of the delivery.

    Returns:
        GatewaySignal; UNKNOWN when the event type is unrecognised, the
        body is malformed, or a capture event does not report the
        expected resource status.
    """
    if not isinstance(payload, dict):
        return GatewaySignal(kind=SignalKind.UNKNOWN, event_type="", detail="payload is not an object")

    event_type = _str(payload.get("event_type")) or ""
    event_id = _str(payload.get("id"))
    resource = payload.get("resource")
    if not isinstance(resource, dict):
        return GatewaySignal(
            kind=SignalKind.UNKNOWN,
            event_type=event_type,
            event_id=event_id,
            detail="missing resource",
            raw=payload,
        )

    if event_type in _CANCELLATION_EVENTS:
        return GatewaySignal(
            kind=SignalKind.ORDER_CANCELLED,
            event_type=event_type,
            event_id=event_id,
            order_id=_str(resource.get("id")),
            raw=payload,
        )

    kind = _CAPTURE_EVENTS.get(event_type)
    if kind is None:
        return GatewaySignal(kind=SignalKind.UNKNOWN, event_type=event_type, event_id=event_id, raw=payload)

    if kind == SignalKind.CAPTURE_REFUNDED:
        # resource is the refund; the capture is referenced by link
        return GatewaySignal(
            kind=kind,
            event_type=event_type,
            event_id=event_id,
            capture_id=_linked_capture_id(resource),
            order_id=_related_order_id(resource),
            raw=payload,
        )

    status = (_str(resource.get("status")) or "").upper()
    if kind == SignalKind.CAPTURE_COMPLETED and status != "COMPLETED":
        return GatewaySignal(
            kind=SignalKind.UNKNOWN,
            event_type=event_type,
            event_id=event_id,
            capture_id=_str(resource.get("id")),
            order_id=_related_order_id(resource),
            detail=f"capture status {status or 'absent'}",
            raw=payload,
        )

    return GatewaySignal(
        kind=kind,
        event_type=event_type,
        event_id=event_id,
        capture_id=_str(resource.get("id")),
        order_id=_related_order_id(resource),
        raw=payload,
    )
