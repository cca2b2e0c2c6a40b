"""Domain value types: statuses, history entries, typed payloads."""

from unitpay_engine.domain.history import (
    StatusHistoryEntry,
    current_run,
    decode_history,
    has_cancellation_marker,
)
from unitpay_engine.domain.payloads import (
    ChainProof,
    GatewayProof,
    ManualProof,
    MerchantInfo,
    PaymentProof,
    ProcessingDetails,
    decode_proof,
)
from unitpay_engine.domain.types import (
    LP_ASSIGNED_STATUSES,
    TERMINAL_STATUSES,
    HistorySource,
    IntentStatus,
    Platform,
    is_wallet_address,
    normalize_wallet,
    utcnow,
)

__all__ = [
    "ChainProof",
    "GatewayProof",
    "HistorySource",
    "IntentStatus",
    "LP_ASSIGNED_STATUSES",
    "ManualProof",
    "MerchantInfo",
    "PaymentProof",
    "Platform",
    "ProcessingDetails",
    "StatusHistoryEntry",
    "TERMINAL_STATUSES",
    "current_run",
    "decode_history",
    "decode_proof",
    "has_cancellation_marker",
    "is_wallet_address",
    "normalize_wallet",
    "utcnow",
]
