"""Typed payloads stored on a payment intent.

``payment_proof``, ``processing_details`` and ``merchant_info`` are JSON
columns. Decoding is total: an absent payload decodes to ``None`` (or an
empty details object), an unrecognised shape raises ValidationError.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from unitpay_engine.domain.types import Platform
from unitpay_engine.exceptions import ValidationError

_BLOCKED_PAYPAL_DOMAINS = ("personal.example.com",)


@dataclass(frozen=True)
class GatewayProof:
    """Gateway order and capture identifiers."""

    order_id: str
    capture_id: str | None = None
    payee_email: str | None = None

    kind = "gateway"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "order_id": self.order_id,
            "capture_id": self.capture_id,
            "payee_email": self.payee_email,
        }


@dataclass(frozen=True)
class ChainProof:
    """On-chain transaction reference."""

    tx_hash: str

    kind = "chain"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "tx_hash": self.tx_hash}


@dataclass(frozen=True)
class ManualProof:
    """Off-gateway payout reference reported by an LP (receipt id, note)."""

    reference: str

    kind = "manual"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "reference": self.reference}


PaymentProof = Union[GatewayProof, ChainProof, ManualProof]


def decode_proof(data: dict[str, Any] | None) -> PaymentProof | None:
    """Decode a stored proof payload."""
    if not data:
        return None
    kind = data.get("kind")
    if kind == "gateway" or (kind is None and data.get("order_id")):
        return GatewayProof(
            order_id=str(data["order_id"]),
            capture_id=data.get("capture_id"),
            payee_email=data.get("payee_email"),
        )
    if kind == "chain" and data.get("tx_hash"):
        return ChainProof(tx_hash=str(data["tx_hash"]))
    if kind == "manual" and data.get("reference"):
        return ManualProof(reference=str(data["reference"]))
    raise ValidationError(f"Unrecognised payment proof payload: {sorted(data)}")


@dataclass(frozen=True)
class ProcessingDetails:
    """Reconciliation metadata accumulated over an intent's life."""

    gateway: str | None = None
    gateway_status: str | None = None
    cancelled_orders: tuple[str, ...] = ()
    anomalies: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "gateway": self.gateway,
            "gateway_status": self.gateway_status,
            "cancelled_orders": list(self.cancelled_orders),
            "anomalies": list(self.anomalies),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ProcessingDetails:
        if not data:
            return cls()
        return cls(
            gateway=data.get("gateway"),
            gateway_status=data.get("gateway_status"),
            cancelled_orders=tuple(data.get("cancelled_orders") or ()),
            anomalies=tuple(data.get("anomalies") or ()),
        )

    def with_cancelled_order(self, order_id: str) -> ProcessingDetails:
        """Record an order id that must never confirm this intent."""
        if order_id in self.cancelled_orders:
            return self
        return ProcessingDetails(
            gateway=self.gateway,
            gateway_status="VOIDED",
            cancelled_orders=(*self.cancelled_orders, order_id),
            anomalies=self.anomalies,
        )

    def with_anomaly(self, description: str) -> ProcessingDetails:
        return ProcessingDetails(
            gateway=self.gateway,
            gateway_status=self.gateway_status,
            cancelled_orders=self.cancelled_orders,
            anomalies=(*self.anomalies, description),
        )


@dataclass(frozen=True)
class MerchantInfo:
    """Payee identity on the external rail."""

    payee_email: str | None = None
    merchant_id: str | None = None
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "payee_email": self.payee_email,
            "merchant_id": self.merchant_id,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> MerchantInfo:
        data = data or {}
        return cls(
            payee_email=data.get("payee_email") or data.get("email"),
            merchant_id=data.get("merchant_id") or data.get("id"),
            name=data.get("name"),
        )

    def validate_for(self, platform: Platform) -> None:
        """Check the payee identity is usable on ``platform``."""
        if platform == Platform.PAYPAL:
            email = (self.payee_email or "").strip()
            if "@" not in email:
                raise ValidationError("PayPal payments require a merchant email")
            domain = email.rsplit("@", 1)[1].lower()
            if domain in _BLOCKED_PAYPAL_DOMAINS:
                raise ValidationError("PayPal merchant email must be a business account")
        elif not (self.merchant_id or self.name or self.payee_email):
            raise ValidationError(f"{platform.value} payments require merchant identity")
