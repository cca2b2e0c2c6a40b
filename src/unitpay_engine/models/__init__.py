"""ORM models."""

from unitpay_engine.models.base import Base, TimestampMixin, UTCDateTime
from unitpay_engine.models.intent import GatewayOrder, PaymentIntent, TaskPoolEntry
from unitpay_engine.models.liquidity import LiquidityProvider, QuotaLock

__all__ = [
    "Base",
    "GatewayOrder",
    "LiquidityProvider",
    "PaymentIntent",
    "QuotaLock",
    "TaskPoolEntry",
    "TimestampMixin",
    "UTCDateTime",
]
