"""Engine configuration objects.

Explicit, immutable configuration for a SettlementEngine instance.

Pattern:
    engine = SettlementEngine(
        session_factory=factory,
        config=EngineConfig(
            fees=FeeConfig(default_rate=Decimal("0.5")),
            sweep=SweepConfig(cancel_grace_seconds=15, stall_timeout_seconds=300),
            expiry=ExpiryConfig(intent_ttl_minutes=30),
            chain=ChainConfig(introspection="direct"),
            gateway=GatewayConfig(provider="paypal"),
        ),
        gateway=PayPalGateway(...),
        escrow=StubEscrow(),
    )

Collaborator strategies (gateway adapter, chain introspection) are picked
here, once, never by probing at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from unitpay_engine.config import Settings

# Escrow status views exposed by the known contract versions
ESCROW_STATUS_FUNCTIONS = ("getPaymentStatus", "getPayment")


@dataclass(frozen=True)
class FeeConfig:
    """
    Fee computation.

    Attributes:
        default_rate: Percentage fee applied when neither caller nor LP
            supplies one. Default 0.5 (%).
        precision: Quantum amounts are rounded to. Default 0.01.
    """

    default_rate: Decimal = Decimal("0.5")
    precision: Decimal = Decimal("0.01")

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.default_rate < 0 or self.default_rate >= 100:
            raise ValueError("default_rate must be in [0, 100)")
        if self.precision <= 0:
            raise ValueError("precision must be positive")


@dataclass(frozen=True)
class SweepConfig:
    """
    Recovery sweep windows.

    Attributes:
        interval_seconds: Period between sweep runs. Default 10.
        cancel_grace_seconds: How long a processing intent carrying a
            cancellation marker is left alone so a concurrent confirmation
            can land first. Default 15.
        stall_timeout_seconds: Age after which an unmarked processing intent
            is reset unconditionally. Default 300.
        history_tail: Number of trailing history entries scanned for a
            cancellation marker. Default 10.
    """

    interval_seconds: int = 10
    cancel_grace_seconds: int = 15
    stall_timeout_seconds: int = 300
    history_tail: int = 10

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.interval_seconds < 1:
            raise ValueError("interval_seconds must be at least 1")
        if self.cancel_grace_seconds < 1:
            raise ValueError("cancel_grace_seconds must be at least 1")
        if self.stall_timeout_seconds <= self.cancel_grace_seconds:
            raise ValueError("stall_timeout_seconds must exceed cancel_grace_seconds")
        if self.history_tail < 1:
            raise ValueError("history_tail must be at least 1")


@dataclass(frozen=True)
class ExpiryConfig:
    """
    Intent expiry.

    Attributes:
        interval_seconds: Period between expiry sweeps. Default 60.
        intent_ttl_minutes: Lifetime of a created intent, refreshed on
            claim. Default 30.
    """

    interval_seconds: int = 60
    intent_ttl_minutes: int = 30

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.interval_seconds < 1:
            raise ValueError("interval_seconds must be at least 1")
        if self.intent_ttl_minutes < 1:
            raise ValueError("intent_ttl_minutes must be at least 1")
        if self.intent_ttl_minutes > 24 * 60:
            raise ValueError("intent_ttl_minutes cannot exceed 1440 (1 day)")


@dataclass(frozen=True)
class ChainConfig:
    """
    Escrow reconciliation.

    Attributes:
        client: "evm" talks to a deployed escrow contract over JSON-RPC;
            "stub" uses the in-memory escrow.
        rpc_url: JSON-RPC endpoint (evm only).
        contract_address: Escrow contract address (evm only).
        signer_key: Private key used to submit withdraw transactions
            (evm only). The contract only releases to its recipient, so
            this must be the recipient LP's key.
        token_decimals: Decimals of the escrowed token. Default 6.
        introspection: "direct" queries the escrow status view; "dry_run"
            infers status from a simulated withdraw call.
        status_function: Name of the status view the deployed contract
            exposes, one of ESCROW_STATUS_FUNCTIONS. Default
            "getPaymentStatus".
        timeout_seconds: Bound on every chain call. Default 15.
        cache_ttl_seconds: Freshness window of cached escrow status.
            Default 120.
        settlement_lock_hours: Time after confirmation before funds are
            withdrawable. Default 24.
    """

    client: str = "stub"
    rpc_url: str = ""
    contract_address: str = ""
    signer_key: str = field(default="", repr=False)
    token_decimals: int = 6
    introspection: str = "direct"
    status_function: str = "getPaymentStatus"
    timeout_seconds: float = 15.0
    cache_ttl_seconds: int = 120
    settlement_lock_hours: int = 24

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.client not in {"evm", "stub"}:
            raise ValueError("client must be 'evm' or 'stub'")
        if self.client == "evm" and not (self.rpc_url and self.contract_address):
            raise ValueError("evm client requires rpc_url and contract_address")
        if not 0 <= self.token_decimals <= 36:
            raise ValueError("token_decimals must be in [0, 36]")
        if self.introspection not in {"direct", "dry_run"}:
            raise ValueError("introspection must be 'direct' or 'dry_run'")
        if self.status_function not in ESCROW_STATUS_FUNCTIONS:
            raise ValueError(f"status_function must be one of {', '.join(ESCROW_STATUS_FUNCTIONS)}")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.cache_ttl_seconds < 0:
            raise ValueError("cache_ttl_seconds cannot be negative")
        if self.settlement_lock_hours < 0:
            raise ValueError("settlement_lock_hours cannot be negative")


@dataclass(frozen=True)
class GatewayConfig:
    """
    Payment gateway adapter selection.

    Attributes:
        provider: "paypal" or "stub".
        sandbox: Use the gateway's sandbox environment. Default True.
        client_id: OAuth client id (paypal only).
        client_secret: OAuth client secret (paypal only).
        timeout_seconds: Bound on every gateway call. Default 10.
        webhook_id: Gateway webhook id for signature verification.
    """

    provider: str = "stub"
    sandbox: bool = True
    client_id: str = ""
    client_secret: str = field(default="", repr=False)
    timeout_seconds: float = 10.0
    webhook_id: str = ""

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.provider not in {"paypal", "stub"}:
            raise ValueError("provider must be 'paypal' or 'stub'")
        if self.provider == "paypal" and not (self.client_id and self.client_secret):
            raise ValueError("paypal provider requires client_id and client_secret")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")


@dataclass(frozen=True)
class EngineConfig:
    """Top-level engine configuration."""

    fees: FeeConfig = field(default_factory=FeeConfig)
    sweep: SweepConfig = field(default_factory=SweepConfig)
    expiry: ExpiryConfig = field(default_factory=ExpiryConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)

    @classmethod
    def from_settings(cls, settings: Settings) -> EngineConfig:
        """Build engine configuration from environment settings."""
        return cls(
            fees=FeeConfig(default_rate=settings.default_fee_rate),
            sweep=SweepConfig(
                interval_seconds=settings.sweep_interval_seconds,
                cancel_grace_seconds=settings.sweep_cancel_grace_seconds,
                stall_timeout_seconds=settings.sweep_stall_timeout_seconds,
            ),
            expiry=ExpiryConfig(
                interval_seconds=settings.expiry_interval_seconds,
                intent_ttl_minutes=settings.intent_ttl_minutes,
            ),
            chain=ChainConfig(
                client=settings.chain_client,
                rpc_url=settings.chain_rpc_url,
                contract_address=settings.escrow_contract_address,
                signer_key=settings.chain_signer_key,
                token_decimals=settings.chain_token_decimals,
                introspection=settings.chain_introspection,
                status_function=settings.chain_status_function,
                timeout_seconds=settings.chain_timeout_seconds,
                cache_ttl_seconds=settings.chain_cache_ttl_seconds,
            ),
            gateway=GatewayConfig(
                provider=settings.gateway_provider,
                sandbox=settings.paypal_mode != "live",
                client_id=settings.paypal_client_id,
                client_secret=settings.paypal_client_secret,
                timeout_seconds=settings.gateway_timeout_seconds,
                webhook_id=settings.paypal_webhook_id,
            ),
        )
