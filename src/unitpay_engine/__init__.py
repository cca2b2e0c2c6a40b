"""UnitPay settlement engine.

This package contains:
- The payment intent state machine and store
- The LP quota ledger
- Gateway and chain reconcilers
- Recovery and expiry sweeps
- Notification fan-out of committed transitions

SettlementEngine is the single entry point; everything else is wired by it.
"""

from unitpay_engine.engine import SettlementEngine
from unitpay_engine.engine_config import (
    ChainConfig,
    EngineConfig,
    ExpiryConfig,
    FeeConfig,
    GatewayConfig,
    SweepConfig,
)
from unitpay_engine.exceptions import (
    EscrowReverted,
    ExternalUnavailable,
    InsufficientQuota,
    IntentNotFound,
    InvalidStateTransition,
    LiquidityProviderNotFound,
    NotAuthorized,
    NotCancellable,
    SettlementError,
    TaskAlreadyClaimed,
    Unreconcilable,
    ValidationError,
    WithdrawalNotAuthorized,
)

__version__ = "0.1.0"

__all__ = [
    "ChainConfig",
    "EngineConfig",
    "EscrowReverted",
    "ExpiryConfig",
    "ExternalUnavailable",
    "FeeConfig",
    "GatewayConfig",
    "InsufficientQuota",
    "IntentNotFound",
    "InvalidStateTransition",
    "LiquidityProviderNotFound",
    "NotAuthorized",
    "NotCancellable",
    "SettlementError",
    "SweepConfig",
    "TaskAlreadyClaimed",
    "Unreconcilable",
    "ValidationError",
    "WithdrawalNotAuthorized",
    "SettlementEngine",
]
