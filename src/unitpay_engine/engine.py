"""Settlement Engine facade - single opinionated integration path.

This facade is the ONLY blessed way to drive payment intents. The API,
the CLI and the scheduled sweeps all go through it.

Usage:
    engine = SettlementEngine(session_factory, config, gateway=gateway, escrow=escrow)

    # LP registers capacity
    await engine.register_lp(wallet, total_quota=Decimal("1000"))

    # User creates an intent, LP claims it
    intent = await engine.create_intent(user_wallet=..., amount="100", platform="PayPal", ...)
    intent = await engine.claim_intent(intent.id, lp_wallet)

    # Gateway payment and reconciliation
    intent, order = await engine.start_gateway_payment(intent.id)
    outcome = await engine.handle_gateway_webhook(payload, headers)

    # Escrow settlement
    decision = await engine.authorize_withdrawal(intent.id, lp_wallet)
    intent, tx_hash = await engine.withdraw(intent.id, lp_wallet)

The facade:
- Opens one transaction per operation and publishes events after commit
- Keeps gateway and chain calls outside database transactions
- Wires the notification fan-out to the event emitter
- Owns the reconcilers and the periodic sweeps
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from unitpay_engine.chain import EscrowClient, build_escrow
from unitpay_engine.domain.payloads import ManualProof, PaymentProof, decode_proof
from unitpay_engine.domain.types import HistorySource, normalize_wallet
from unitpay_engine.engine_config import EngineConfig
from unitpay_engine.events import AsyncEventEmitter, LoggingNotifier, NotificationFanout, Notifier
from unitpay_engine.exceptions import ValidationError
from unitpay_engine.gateway import OrderResult, PaymentGateway, build_gateway
from unitpay_engine.jobs import ExpirySweep, RecoverySweep, SweepResult, SweepScheduler
from unitpay_engine.models import LiquidityProvider, PaymentIntent, TaskPoolEntry
from unitpay_engine.reconciliation import (
    ChainReconciler,
    ChainStatus,
    GatewayReconciler,
    ReconciliationOutcome,
    WithdrawalDecision,
)
from unitpay_engine.services import QuotaViolation, UnitOfWork
from unitpay_engine.services.fees import to_decimal

logger = logging.getLogger(__name__)


class SettlementEngine:
    """Settlement engine facade."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: EngineConfig | None = None,
        *,
        gateway: PaymentGateway | None = None,
        escrow: EscrowClient | None = None,
        notifier: Notifier | None = None,
        emitter: AsyncEventEmitter | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.gateway = gateway or build_gateway(self.config.gateway)
        self.escrow = escrow or build_escrow(self.config.chain)

        self.emitter = emitter or AsyncEventEmitter()
        self.notifier = notifier or LoggingNotifier()
        self.fanout = NotificationFanout(self.notifier)
        self.fanout.attach(self.emitter)

        self.uow = UnitOfWork(session_factory, self.config, self.emitter)
        self.gateway_reconciler = GatewayReconciler(self.uow, self.gateway)
        self.chain_reconciler = ChainReconciler(self.uow, self.escrow, self.config.chain)
        self.recovery_sweep = RecoverySweep(self.uow, self.config.sweep)
        self.expiry_sweep = ExpirySweep(self.uow, self.config.expiry)

    def scheduler(self) -> SweepScheduler:
        """A scheduler driving this engine's sweeps (not yet started)."""
        return SweepScheduler(self.recovery_sweep, self.expiry_sweep)

    async def aclose(self) -> None:
        """Release adapter resources (HTTP clients)."""
        close = getattr(self.gateway, "aclose", None)
        if close is not None:
            await close()

    # =========================================================================
    # Liquidity providers
    # =========================================================================

    async def register_lp(
        self,
        wallet: str,
        *,
        total_quota: Any,
        per_transaction_quota: Any = None,
        fee_rate: Any = None,
        platforms: list[str] | None = None,
        paypal_email: str | None = None,
        name: str | None = None,
        email: str | None = None,
    ) -> LiquidityProvider:
        async with self.uow.begin() as tx:
            return await tx.lps.register(
                wallet_address=wallet,
                total_quota=to_decimal(total_quota, "total_quota"),
                per_transaction_quota=(
                    None if per_transaction_quota is None else to_decimal(per_transaction_quota, "per_transaction_quota")
                ),
                fee_rate=self.config.fees.default_rate if fee_rate is None else to_decimal(fee_rate, "fee_rate"),
                supported_platforms=platforms,
                paypal_email=paypal_email,
                name=name,
                email=email,
            )

    async def update_lp_quota(
        self,
        wallet: str,
        *,
        total_quota: Any = None,
        per_transaction_quota: Any = None,
    ) -> LiquidityProvider:
        """Change an LP's capacity. Total may not drop below locked quota."""
        if total_quota is None and per_transaction_quota is None:
            raise ValidationError("nothing to update")
        async with self.uow.begin() as tx:
            return await tx.lps.update_quota(
                normalize_wallet(wallet),
                total_quota=None if total_quota is None else to_decimal(total_quota, "total_quota"),
                per_transaction_quota=(
                    None if per_transaction_quota is None else to_decimal(per_transaction_quota, "per_transaction_quota")
                ),
            )

    async def get_lp(self, wallet: str) -> LiquidityProvider:
        async with self.uow.begin() as tx:
            return await tx.lps.get(normalize_wallet(wallet))

    # =========================================================================
    # Intent lifecycle
    # =========================================================================

    async def create_intent(
        self,
        *,
        user_wallet: str,
        amount: Any,
        platform: str,
        merchant_info: dict[str, Any] | None,
        lp_wallet: str | None = None,
        auto_match: bool = False,
        fee_rate: Any = None,
        currency: str = "USD",
        description: str | None = None,
        network: str | None = None,
    ) -> PaymentIntent:
        """Create an intent; with an LP (explicit or matched) it is claimed in the same transaction."""
        async with self.uow.begin() as tx:
            return await tx.intents.create(
                user_wallet=user_wallet,
                amount=amount,
                platform=platform,
                merchant_info=merchant_info,
                currency=currency,
                description=description,
                fee_rate=fee_rate,
                lp_wallet=lp_wallet,
                auto_match=auto_match,
                network=network,
            )

    async def claim_intent(self, intent_id: str, lp_wallet: str) -> PaymentIntent:
        async with self.uow.begin() as tx:
            return await tx.intents.claim(intent_id, lp_wallet)

    async def start_gateway_payment(self, intent_id: str) -> tuple[PaymentIntent, OrderResult]:
        return await self.gateway_reconciler.start_order(intent_id)

    async def capture_gateway_payment(self, intent_id: str, order_id: str) -> ReconciliationOutcome:
        return await self.gateway_reconciler.capture_order(intent_id, order_id)

    async def mark_paid(
        self,
        intent_id: str,
        lp_wallet: str,
        proof: PaymentProof | dict[str, Any] | str,
    ) -> PaymentIntent:
        """LP reports paying the merchant outside the gateway flow."""
        async with self.uow.begin() as tx:
            return await tx.intents.mark_paid(intent_id, lp_wallet=lp_wallet, proof=_proof(proof))

    async def confirm_intent(
        self,
        intent_id: str,
        user_wallet: str,
        proof: PaymentProof | dict[str, Any] | str | None = None,
    ) -> PaymentIntent:
        """User confirms the merchant was paid."""
        async with self.uow.begin() as tx:
            return await tx.intents.confirm(
                intent_id,
                source=HistorySource.USER,
                proof=None if proof is None else _proof(proof),
                actor_wallet=user_wallet,
                note="Confirmed by user",
            )

    async def cancel_intent(self, intent_id: str, requester_wallet: str) -> PaymentIntent:
        async with self.uow.begin() as tx:
            return await tx.intents.cancel(intent_id, requester_wallet=requester_wallet)

    async def assign_blockchain_payment_id(self, intent_id: str, payment_id: str) -> PaymentIntent:
        async with self.uow.begin() as tx:
            return await tx.intents.assign_blockchain_payment_id(intent_id, (payment_id or "").strip())

    # =========================================================================
    # Gateway reconciliation
    # =========================================================================

    async def handle_gateway_webhook(
        self,
        payload: Any,
        headers: Mapping[str, str] | None = None,
    ) -> ReconciliationOutcome:
        return await self.gateway_reconciler.handle_webhook(payload, headers)

    async def poll_gateway_status(self, intent_id: str) -> ReconciliationOutcome:
        return await self.gateway_reconciler.poll(intent_id)

    async def report_client_cancellation(self, intent_id: str) -> ReconciliationOutcome:
        return await self.gateway_reconciler.report_client_cancellation(intent_id)

    # =========================================================================
    # Chain reconciliation
    # =========================================================================

    async def sync_chain_status(self, intent_id: str, *, force: bool = False) -> ChainStatus:
        return await self.chain_reconciler.sync(intent_id, force=force)

    async def authorize_withdrawal(
        self,
        intent_id: str,
        caller_wallet: str,
        now: datetime | None = None,
    ) -> WithdrawalDecision:
        return await self.chain_reconciler.authorize_withdrawal(intent_id, caller_wallet, now=now)

    async def withdraw(
        self,
        intent_id: str,
        caller_wallet: str,
        now: datetime | None = None,
    ) -> tuple[PaymentIntent, str]:
        return await self.chain_reconciler.withdraw(intent_id, caller_wallet, now=now)

    # =========================================================================
    # Read projections
    # =========================================================================

    async def get_intent(self, intent_id: str) -> PaymentIntent:
        async with self.uow.begin() as tx:
            return await tx.intents.get(intent_id)

    async def list_user_intents(self, wallet: str) -> list[PaymentIntent]:
        async with self.uow.begin() as tx:
            return await tx.intents.list_for_user(wallet)

    async def list_lp_intents(self, wallet: str) -> list[PaymentIntent]:
        async with self.uow.begin() as tx:
            return await tx.intents.list_for_lp(wallet)

    async def task_pool(
        self,
        *,
        lp_wallet: str | None = None,
        status: str | None = None,
        platforms: list[str] | None = None,
    ) -> list[TaskPoolEntry]:
        async with self.uow.begin() as tx:
            return await tx.task_pool.list_entries(
                lp_wallet=normalize_wallet(lp_wallet, "lp_wallet") if lp_wallet else None,
                status=status,
                platforms=platforms,
            )

    # =========================================================================
    # Operations
    # =========================================================================

    async def run_recovery_sweep(self, now: datetime | None = None) -> SweepResult:
        return await self.recovery_sweep.run(now)

    async def run_expiry_sweep(self, now: datetime | None = None) -> SweepResult:
        return await self.expiry_sweep.run(now)

    async def rebuild_task_pool(self) -> int:
        async with self.uow.begin() as tx:
            return await tx.task_pool.rebuild()

    async def verify_quota_invariants(self, lp_wallet: str | None = None) -> list[QuotaViolation]:
        async with self.uow.begin() as tx:
            violations = await tx.ledger.verify(normalize_wallet(lp_wallet) if lp_wallet else None)
        for violation in violations:
            logger.error("Quota invariant broken for %s: %s %s", violation.lp_wallet, violation.kind, violation.detail)
        return violations


def _proof(raw: PaymentProof | dict[str, Any] | str) -> PaymentProof:
    """Accept a typed proof, a stored payload, or a bare payout reference."""
    if isinstance(raw, str):
        reference = raw.strip()
        if not reference:
            raise ValidationError("payment proof is required")
        return ManualProof(reference=reference)
    if isinstance(raw, dict):
        proof = decode_proof(raw)
        if proof is None:
            raise ValidationError("payment proof is required")
        return proof
    return raw

