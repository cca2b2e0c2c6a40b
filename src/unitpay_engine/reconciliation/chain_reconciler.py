"""Chain reconciler.

Maps on-chain escrow state onto the intent lifecycle, authorizes
withdrawals, and recognizes terminal settlement.

Escrow introspection is a strategy picked from ChainConfig.introspection:

- DirectStatusQuery reads the contract's status view.
- DryRunInference simulates the withdraw call and classifies the revert
  reason (NotFound, InvalidStatus, NotOwner, Disputed, NotDue). An
  unclassifiable revert raises Unreconcilable.

Results are cached per intent for ChainConfig.cache_ttl_seconds. Withdrawal
authorization always reads fresh state and evaluates four independent
checks: escrow confirmed, caller is the recipient, settlement lock
elapsed, no dispute.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Protocol

from unitpay_engine.chain.base import EscrowClient, EscrowStatus, RevertCause
from unitpay_engine.domain.types import HistorySource, IntentStatus, normalize_wallet, utcnow
from unitpay_engine.engine_config import ChainConfig
from unitpay_engine.exceptions import (
    EscrowReverted,
    ExternalUnavailable,
    InvalidStateTransition,
    Unreconcilable,
    ValidationError,
    WithdrawalNotAuthorized,
)
from unitpay_engine.models import PaymentIntent
from unitpay_engine.services.state_machine import IntentStateMachine
from unitpay_engine.services.unit_of_work import Transaction, UnitOfWork

logger = logging.getLogger(__name__)

S = IntentStatus


@dataclass(frozen=True)
class EscrowObservation:
    """What one introspection call told us. ``None`` means not reported."""

    method: str
    escrow_status: EscrowStatus | None
    is_disputed: bool | None = None
    recipient: str | None = None
    chain_confirmed_at: datetime | None = None
    amount: Decimal | None = None
    revert_cause: RevertCause | None = None


@dataclass(frozen=True)
class ChainStatus:
    """Escrow state surfaced to callers, with its sync time."""

    intent_id: str
    payment_id: str
    observation: EscrowObservation
    last_synced_at: datetime
    intent_status: str
    from_cache: bool = False
    stale: bool = False

    def to_dict(self) -> dict[str, Any]:
        obs = self.observation
        return {
            "intent_id": self.intent_id,
            "payment_id": self.payment_id,
            "method": obs.method,
            "escrow_status": obs.escrow_status.name if obs.escrow_status is not None else None,
            "is_disputed": obs.is_disputed,
            "recipient": obs.recipient,
            "chain_confirmed_at": obs.chain_confirmed_at.isoformat() if obs.chain_confirmed_at else None,
            "amount": str(obs.amount) if obs.amount is not None else None,
            "revert_cause": obs.revert_cause.value if obs.revert_cause else None,
            "intent_status": self.intent_status,
            "last_synced_at": self.last_synced_at.isoformat(),
            "from_cache": self.from_cache,
            "stale": self.stale,
        }


@dataclass
class WithdrawalDecision:
    """Result of the four withdrawal checks."""

    intent_id: str
    caller: str
    checks: dict[str, bool]
    reasons: list[str]
    withdrawable_at: datetime | None
    status: ChainStatus

    @property
    def authorized(self) -> bool:
        return all(self.checks.values())


# =============================================================================
# Introspection strategies
# =============================================================================


class StatusIntrospection(Protocol):
    method: str

    async def observe(self, escrow: EscrowClient, payment_id: str, caller: str | None) -> EscrowObservation:
        ...


class DirectStatusQuery:
    """Read the escrow status view."""

    method = "direct"

    async def observe(self, escrow: EscrowClient, payment_id: str, caller: str | None) -> EscrowObservation:
        record = await escrow.get_payment_status(payment_id)
        if not record.found:
            return EscrowObservation(
                method=self.method,
                escrow_status=EscrowStatus.NONE,
                revert_cause=RevertCause.NOT_FOUND,
            )
        return EscrowObservation(
            method=self.method,
            escrow_status=record.status,
            is_disputed=record.is_disputed,
            recipient=record.recipient,
            chain_confirmed_at=record.release_time,
            amount=record.amount,
        )


class DryRunInference:
    """Infer escrow state from a simulated withdraw.

    Withdraw checks existence, status, lock period and recipient, so a
    successful dry run implies all four hold for ``caller``.
    """

    method = "dry_run"

    async def observe(self, escrow: EscrowClient, payment_id: str, caller: str | None) -> EscrowObservation:
        if caller is None:
            return EscrowObservation(method=self.method, escrow_status=None)
        result = await escrow.dry_run_withdraw(payment_id, caller)
        if result.ok:
            return EscrowObservation(
                method=self.method,
                escrow_status=EscrowStatus.CONFIRMED,
                is_disputed=False,
                recipient=caller,
            )

        cause = result.cause
        if cause is None:
            logger.error("Unclassified escrow revert for %s: %r", payment_id, result.revert_reason)
            raise Unreconcilable(f"Unclassified escrow revert for '{payment_id}': {result.revert_reason}")
        if cause == RevertCause.NOT_FOUND:
            return EscrowObservation(method=self.method, escrow_status=EscrowStatus.NONE, revert_cause=cause)
        if cause == RevertCause.DISPUTED:
            return EscrowObservation(method=self.method, escrow_status=None, is_disputed=True, revert_cause=cause)
        if cause == RevertCause.NOT_DUE:
            # Status is checked before the lock period
            return EscrowObservation(method=self.method, escrow_status=EscrowStatus.CONFIRMED, revert_cause=cause)
        return EscrowObservation(method=self.method, escrow_status=None, revert_cause=cause)


def build_introspection(config: ChainConfig) -> StatusIntrospection:
    if config.introspection == "dry_run":
        return DryRunInference()
    return DirectStatusQuery()


# =============================================================================
# Cache
# =============================================================================


@dataclass
class StatusCache:
    """Per-intent escrow status with a freshness window.

    Expired entries are kept for stale fallback, but only for
    ``retention_ttls`` TTLs (at least ``min_retention_seconds``); older
    entries are dropped whenever a newer status is written.
    """

    ttl_seconds: int
    retention_ttls: int = 10
    min_retention_seconds: int = 600
    _entries: dict[str, ChainStatus] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def retention(self) -> timedelta:
        return timedelta(seconds=max(self.ttl_seconds * self.retention_ttls, self.min_retention_seconds))

    def get(self, intent_id: str, now: datetime) -> ChainStatus | None:
        """Fresh entry or None. Expired entries stay for stale fallback."""
        entry = self._entries.get(intent_id)
        if entry is None:
            return None
        if now - entry.last_synced_at > timedelta(seconds=self.ttl_seconds):
            return None
        return entry

    def get_stale(self, intent_id: str) -> ChainStatus | None:
        return self._entries.get(intent_id)

    def put(self, status: ChainStatus) -> None:
        self._entries[status.intent_id] = status
        self.evict(status.last_synced_at)

    def evict(self, now: datetime) -> int:
        """Drop entries synced before the retention window. Returns the count."""
        cutoff = now - self.retention
        expired = [key for key, entry in self._entries.items() if entry.last_synced_at < cutoff]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def invalidate(self, intent_id: str) -> None:
        self._entries.pop(intent_id, None)


# =============================================================================
# Reconciler
# =============================================================================


class ChainReconciler:
    """Reconciles intents against the escrow contract."""

    def __init__(
        self,
        uow: UnitOfWork,
        escrow: EscrowClient,
        config: ChainConfig,
        cache: StatusCache | None = None,
    ) -> None:
        self.uow = uow
        self.escrow = escrow
        self.config = config
        self.introspection = build_introspection(config)
        self.cache = cache if cache is not None else StatusCache(ttl_seconds=config.cache_ttl_seconds)

    async def sync(self, intent_id: str, *, force: bool = False, now: datetime | None = None) -> ChainStatus:
        """Return escrow status, from cache when fresh, and apply it to the intent.

        On a chain outage a stale cached value is returned (``stale=True``);
        with nothing cached ExternalUnavailable propagates.
        """
        now = now or utcnow()
        if not force:
            cached = self.cache.get(intent_id, now)
            if cached is not None:
                return replace(cached, from_cache=True)

        async with self.uow.begin() as tx:
            intent = await tx.intents.get(intent_id)
            payment_id = _payment_id(intent)
            caller = intent.lp_wallet_address

        try:
            return await self._observe(intent_id, payment_id, caller, now)
        except ExternalUnavailable as e:
            stale = self.cache.get_stale(intent_id)
            if stale is None:
                raise
            logger.warning("Chain sync for %s unavailable, serving stale status: %s", intent_id, e)
            return replace(stale, from_cache=True, stale=True)

    async def _observe(self, intent_id: str, payment_id: str, caller: str | None, now: datetime) -> ChainStatus:
        observation = await self.introspection.observe(self.escrow, payment_id, caller)
        async with self.uow.begin() as tx:
            intent = await self._apply(tx, intent_id, observation)
        status = ChainStatus(
            intent_id=intent_id,
            payment_id=payment_id,
            observation=observation,
            last_synced_at=now,
            intent_status=intent.status,
        )
        self.cache.put(status)
        return status

    async def _apply(self, tx: Transaction, intent_id: str, obs: EscrowObservation) -> PaymentIntent:
        """Move the intent to match escrow state. No-op when already aligned."""
        intent = await tx.intents.get(intent_id)
        status = IntentStatus(intent.status)

        if obs.is_disputed and IntentStateMachine.can_transition(status, S.DISPUTED):
            return await tx.intents.dispute(intent_id, reason="Escrow dispute flag set", source=HistorySource.CHAIN)
        if obs.escrow_status == EscrowStatus.REFUNDED and IntentStateMachine.can_transition(status, S.DISPUTED):
            return await tx.intents.dispute(intent_id, reason="Escrow refunded", source=HistorySource.CHAIN)
        if obs.escrow_status == EscrowStatus.CONFIRMED and status in {S.PROCESSING, S.PAID}:
            return await tx.intents.confirm(
                intent_id,
                source=HistorySource.CHAIN,
                note="Escrow confirmed on chain",
            )
        if obs.escrow_status == EscrowStatus.RELEASED and status == S.CONFIRMED:
            return await tx.intents.settle(intent_id, tx_hash=None, source=HistorySource.CHAIN)
        return intent

    async def authorize_withdrawal(
        self,
        intent_id: str,
        caller_wallet: str,
        *,
        now: datetime | None = None,
    ) -> WithdrawalDecision:
        """Evaluate the withdrawal checks against freshly read escrow state.

        Raises:
            ValidationError: Bad wallet, or the intent has no escrow id.
            ExternalUnavailable: Escrow state could not be read.
        """
        now = now or utcnow()
        caller = normalize_wallet(caller_wallet, "caller_wallet")
        async with self.uow.begin() as tx:
            intent = await tx.intents.get(intent_id)
            payment_id = _payment_id(intent)

        status = await self._observe(intent_id, payment_id, caller, now)

        async with self.uow.begin() as tx:
            intent = await tx.intents.get(intent_id)
        return self._decide(intent, caller, status, now)

    def _decide(self, intent: PaymentIntent, caller: str, status: ChainStatus, now: datetime) -> WithdrawalDecision:
        obs = status.observation
        reasons: list[str] = []

        confirmed = obs.escrow_status == EscrowStatus.CONFIRMED
        if not confirmed:
            shown = obs.escrow_status.name if obs.escrow_status is not None else "unknown"
            reasons.append(f"escrow status is {shown}, not CONFIRMED")

        recipient = obs.recipient or intent.lp_wallet_address
        recipient_ok = recipient == caller and obs.revert_cause != RevertCause.NOT_OWNER
        if not recipient_ok:
            reasons.append("caller is not the escrow recipient")

        confirmed_at = obs.chain_confirmed_at or intent.confirmed_at
        withdrawable_at = (
            confirmed_at + timedelta(hours=self.config.settlement_lock_hours) if confirmed_at is not None else None
        )
        lock_elapsed = (
            withdrawable_at is not None and now >= withdrawable_at and obs.revert_cause != RevertCause.NOT_DUE
        )
        if not lock_elapsed:
            if withdrawable_at is None:
                reasons.append("confirmation time unknown")
            else:
                reasons.append(f"settlement lock runs until {withdrawable_at.isoformat()}")

        undisputed = obs.is_disputed is False
        if not undisputed:
            reasons.append("dispute flag set" if obs.is_disputed else "dispute flag unknown")

        return WithdrawalDecision(
            intent_id=intent.id,
            caller=caller,
            checks={
                "escrow_confirmed": confirmed,
                "recipient_matches": recipient_ok,
                "lock_elapsed": lock_elapsed,
                "not_disputed": undisputed,
            },
            reasons=reasons,
            withdrawable_at=withdrawable_at,
            status=status,
        )

    async def withdraw(
        self,
        intent_id: str,
        caller_wallet: str,
        *,
        now: datetime | None = None,
    ) -> tuple[PaymentIntent, str]:
        """Authorize, submit the escrow withdraw, then settle the intent.

        Returns:
            (settled intent, withdraw tx hash)

        Raises:
            WithdrawalNotAuthorized: A check failed or the contract reverted.
            InvalidStateTransition: The intent is not ``confirmed``.
            ExternalUnavailable: The withdraw outcome is unknown; the next
                sync settles the intent if it went through.
        """
        decision = await self.authorize_withdrawal(intent_id, caller_wallet, now=now)
        if not decision.authorized:
            raise WithdrawalNotAuthorized(intent_id, decision.reasons)
        if decision.status.intent_status != S.CONFIRMED.value:
            raise InvalidStateTransition(decision.status.intent_status, S.SETTLED.value, "intent is not confirmed")

        try:
            result = await self.escrow.withdraw(decision.status.payment_id, decision.caller)
        except EscrowReverted as e:
            self.cache.invalidate(intent_id)
            raise WithdrawalNotAuthorized(intent_id, [f"escrow reverted: {e.reason}"]) from e

        self.cache.invalidate(intent_id)
        async with self.uow.begin() as tx:
            intent = await tx.intents.settle(intent_id, tx_hash=result.tx_hash, source=HistorySource.LP)
        logger.info("Intent %s settled by withdraw %s", intent_id, result.tx_hash)
        return intent, result.tx_hash


def _payment_id(intent: PaymentIntent) -> str:
    if not intent.blockchain_payment_id:
        raise ValidationError(f"Payment intent '{intent.id}' has no blockchain payment id")
    return intent.blockchain_payment_id
