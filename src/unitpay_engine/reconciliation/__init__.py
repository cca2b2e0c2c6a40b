"""Reconcilers aligning intents with the gateway and the escrow contract."""

from unitpay_engine.reconciliation.chain_reconciler import (
    ChainReconciler,
    ChainStatus,
    DirectStatusQuery,
    DryRunInference,
    EscrowObservation,
    StatusCache,
    WithdrawalDecision,
    build_introspection,
)
from unitpay_engine.reconciliation.gateway_reconciler import (
    GatewayReconciler,
    ReconciliationOutcome,
    ReconciliationStatus,
)

__all__ = [
    "ChainReconciler",
    "ChainStatus",
    "DirectStatusQuery",
    "DryRunInference",
    "EscrowObservation",
    "GatewayReconciler",
    "ReconciliationOutcome",
    "ReconciliationStatus",
    "StatusCache",
    "WithdrawalDecision",
    "build_introspection",
]
