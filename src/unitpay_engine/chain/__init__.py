"""Escrow contract clients."""

from unitpay_engine.chain.base import (
    ZERO_ADDRESS,
    DryRunResult,
    EscrowClient,
    EscrowRecord,
    EscrowStatus,
    RevertCause,
    WithdrawResult,
    classify_revert,
    decode_status_response,
)
from unitpay_engine.chain.evm import EvmEscrowClient
from unitpay_engine.chain.stub import StubEscrow
from unitpay_engine.engine_config import ChainConfig


def build_escrow(config: ChainConfig) -> EscrowClient:
    """Construct the client named by ``config.client``."""
    if config.client == "evm":
        return EvmEscrowClient(config)
    return StubEscrow(settlement_lock_hours=config.settlement_lock_hours)


__all__ = [
    "DryRunResult",
    "EscrowClient",
    "EscrowRecord",
    "EscrowStatus",
    "EvmEscrowClient",
    "RevertCause",
    "StubEscrow",
    "WithdrawResult",
    "ZERO_ADDRESS",
    "build_escrow",
    "classify_revert",
    "decode_status_response",
]
