"""Core enums and value helpers shared across the engine."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum

from unitpay_engine.exceptions import ValidationError


class IntentStatus(str, Enum):
    """Payment intent status values."""

    CREATED = "created"
    CLAIMED = "claimed"
    PROCESSING = "processing"
    PAID = "paid"
    CONFIRMED = "confirmed"
    SETTLED = "settled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"
    DISPUTED = "disputed"


# Statuses in which an LP must be assigned.
LP_ASSIGNED_STATUSES = frozenset({
    IntentStatus.CLAIMED,
    IntentStatus.PROCESSING,
    IntentStatus.PAID,
    IntentStatus.CONFIRMED,
    IntentStatus.SETTLED,
})

TERMINAL_STATUSES = frozenset({
    IntentStatus.SETTLED,
    IntentStatus.CANCELLED,
    IntentStatus.EXPIRED,
    IntentStatus.FAILED,
    IntentStatus.DISPUTED,
})


class Platform(str, Enum):
    """External payment rails an intent can be paid on."""

    PAYPAL = "PayPal"
    WECHAT = "WeChat"
    ALIPAY = "Alipay"
    OTHER = "Other"


class HistorySource(str, Enum):
    """Who caused a status history entry."""

    USER = "user"
    LP = "lp"
    GATEWAY = "gateway"
    CHAIN = "chain"
    SWEEP = "sweep"
    SYSTEM = "system"


_EVM_ADDRESS = re.compile(r"^0x[a-fA-F0-9]{40}$")
_SOLANA_ADDRESS = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def is_wallet_address(value: str | None) -> bool:
    """True for an EVM (0x + 40 hex) or Solana (base58, 32-44 chars) address."""
    if not value:
        return False
    return bool(_EVM_ADDRESS.match(value) or _SOLANA_ADDRESS.match(value))


def normalize_wallet(value: str | None, field_name: str = "wallet_address") -> str:
    """Validate a wallet address and return its canonical form.

    EVM addresses are lower-cased; base58 addresses are case-sensitive and
    returned unchanged.
    """
    value = (value or "").strip()
    if not is_wallet_address(value):
        raise ValidationError(f"{field_name} is not a valid wallet address")
    if value.startswith("0x"):
        return value.lower()
    return value


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)
