"""Payment gateway adapters."""

from unitpay_engine.engine_config import GatewayConfig
from unitpay_engine.gateway.base import (
    CaptureResult,
    OrderRequest,
    OrderResult,
    OrderStatus,
    OrderStatusResult,
    PaymentGateway,
)
from unitpay_engine.gateway.paypal import PayPalGateway
from unitpay_engine.gateway.stub import StubGateway
from unitpay_engine.gateway.webhooks import GatewaySignal, SignalKind, parse_paypal_event


def build_gateway(config: GatewayConfig) -> PaymentGateway:
    """Construct the adapter named by ``config.provider``."""
    if config.provider == "paypal":
        return PayPalGateway(config)
    return StubGateway()


__all__ = [
    "CaptureResult",
    "GatewaySignal",
    "OrderRequest",
    "OrderResult",
    "OrderStatus",
    "OrderStatusResult",
    "PayPalGateway",
    "PaymentGateway",
    "SignalKind",
    "StubGateway",
    "build_gateway",
    "parse_paypal_event",
]
