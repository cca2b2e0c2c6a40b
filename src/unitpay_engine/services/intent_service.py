"""Payment intent store and transition executor.

Every transition is one guarded UPDATE:

    UPDATE payment_intent
    SET status = :to, status_history = :history + [entry], version = version + 1, ...
    WHERE id = :id AND status = :from AND version = :version

A zero rowcount means another writer got there first and nothing was
written. Edge side effects (quota lock/release, LP assignment, task pool
upsert) run in the same database transaction, and exactly one
IntentTransitioned event is queued for publication after commit.

Callers must run these methods inside a transaction that is rolled back
on any exception; the engine facade does this for every operation.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from unitpay_engine.domain.history import StatusHistoryEntry
from unitpay_engine.domain.payloads import (
    GatewayProof,
    MerchantInfo,
    PaymentProof,
    ProcessingDetails,
)
from unitpay_engine.domain.types import HistorySource, IntentStatus, Platform, normalize_wallet, utcnow
from unitpay_engine.engine_config import EngineConfig
from unitpay_engine.events.types import EventMetadata, IntentCreated, IntentTransitioned
from unitpay_engine.exceptions import (
    IntentNotFound,
    InvalidStateTransition,
    NotAuthorized,
    NotCancellable,
    TaskAlreadyClaimed,
    ValidationError,
)
from unitpay_engine.models import GatewayOrder, LiquidityProvider, PaymentIntent
from unitpay_engine.services.fees import quote_fee, to_decimal
from unitpay_engine.services.lp_service import LiquidityProviderService
from unitpay_engine.services.quota_ledger import QuotaLedger
from unitpay_engine.services.state_machine import IntentStateMachine
from unitpay_engine.services.task_pool import TaskPoolService

logger = logging.getLogger(__name__)

S = IntentStatus

EventSink = Callable[[Any], None]
SideEffect = Callable[[PaymentIntent], Awaitable[None]]


class IntentService:
    """Creates intents and applies every status transition."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        config: EngineConfig,
        ledger: QuotaLedger,
        task_pool: TaskPoolService,
        lps: LiquidityProviderService,
        publish: EventSink,
    ):
        self.session = session
        self.config = config
        self.ledger = ledger
        self.task_pool = task_pool
        self.lps = lps
        self.publish = publish

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, intent_id: str) -> PaymentIntent:
        """Load an intent with fresh column values."""
        result = await self.session.execute(
            select(PaymentIntent)
            .where(PaymentIntent.id == intent_id)
            .execution_options(populate_existing=True)
        )
        intent = result.scalars().first()
        if intent is None:
            raise IntentNotFound(intent_id)
        return intent

    async def list_for_user(self, wallet: str) -> list[PaymentIntent]:
        result = await self.session.execute(
            select(PaymentIntent)
            .where(PaymentIntent.user_wallet_address == normalize_wallet(wallet))
            .order_by(PaymentIntent.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_for_lp(self, wallet: str) -> list[PaymentIntent]:
        result = await self.session.execute(
            select(PaymentIntent)
            .where(PaymentIntent.lp_wallet_address == normalize_wallet(wallet))
            .order_by(PaymentIntent.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_by_status(self, statuses: set[IntentStatus], *, limit: int = 500) -> list[PaymentIntent]:
        result = await self.session.execute(
            select(PaymentIntent)
            .where(PaymentIntent.status.in_([s.value for s in statuses]))
            .order_by(PaymentIntent.updated_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_expired(self, now: datetime, *, limit: int = 500) -> list[PaymentIntent]:
        """Expirable intents whose ``expires_at`` has passed."""
        result = await self.session.execute(
            select(PaymentIntent)
            .where(
                PaymentIntent.status.in_([s.value for s in IntentStateMachine.EXPIRABLE]),
                PaymentIntent.expires_at.is_not(None),
                PaymentIntent.expires_at < now,
            )
            .order_by(PaymentIntent.expires_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_by_gateway_reference(
        self,
        *,
        capture_id: str | None = None,
        order_id: str | None = None,
    ) -> tuple[PaymentIntent, GatewayOrder] | None:
        """Link a gateway signal to an intent via stored order/capture ids."""
        conditions = []
        if capture_id:
            conditions.append(GatewayOrder.capture_id == capture_id)
        if order_id:
            conditions.append(GatewayOrder.order_id == order_id)
        if not conditions:
            return None
        result = await self.session.execute(
            select(GatewayOrder).where(or_(*conditions)).execution_options(populate_existing=True)
        )
        order = result.scalars().first()
        if order is None:
            return None
        return await self.get(order.intent_id), order

    async def open_order(self, intent_id: str) -> GatewayOrder | None:
        result = await self.session.execute(
            select(GatewayOrder)
            .where(GatewayOrder.intent_id == intent_id, GatewayOrder.status == "open")
            .order_by(GatewayOrder.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(
        self,
        *,
        user_wallet: str,
        amount: Any,
        platform: str,
        merchant_info: dict[str, Any] | None,
        currency: str = "USD",
        description: str | None = None,
        fee_rate: Any = None,
        lp_wallet: str | None = None,
        auto_match: bool = False,
        network: str | None = None,
        now: datetime | None = None,
    ) -> PaymentIntent:
        """Create an intent, optionally claiming it for an LP in the same transaction.

        With ``lp_wallet`` the intent is claimed by that LP; with
        ``auto_match`` the cheapest capable LP is chosen. If auto-match finds
        no LP the intent stays ``created`` in the task pool.
        """
        now = now or utcnow()
        user = normalize_wallet(user_wallet, "user_wallet")
        try:
            platform_enum = Platform(platform)
        except ValueError as e:
            raise ValidationError(f"Unsupported platform '{platform}'") from e
        merchant = MerchantInfo.from_dict(merchant_info)
        merchant.validate_for(platform_enum)

        currency = (currency or "").strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError("currency must be a 3-letter code")

        parsed_amount = to_decimal(amount, "amount")
        if parsed_amount <= 0:
            raise ValidationError("amount must be positive")
        if lp_wallet and auto_match:
            raise ValidationError("choose either lp_wallet or auto_match, not both")

        lp: LiquidityProvider | None = None
        if lp_wallet:
            lp = await self.lps.get(normalize_wallet(lp_wallet, "lp_wallet"))
            if not lp.supports(platform_enum.value):
                raise ValidationError(f"LP does not support {platform_enum.value}")
        elif auto_match:
            lp = await self.lps.find_match(parsed_amount, platform_enum)
            if lp is None:
                logger.info("No LP matched amount=%s platform=%s", parsed_amount, platform_enum.value)

        if fee_rate is not None:
            rate = to_decimal(fee_rate, "fee_rate")
        elif lp is not None:
            rate = lp.fee_rate
        else:
            rate = self.config.fees.default_rate
        quote = quote_fee(parsed_amount, rate, self.config.fees.precision)

        entry = StatusHistoryEntry(
            status=S.CREATED,
            timestamp=now,
            note="Payment intent created",
            source=HistorySource.USER,
        )
        intent = PaymentIntent(
            amount=quote.amount,
            currency=currency,
            fee_rate=quote.fee_rate,
            fee_amount=quote.fee_amount,
            total_amount=quote.total_amount,
            user_wallet_address=user,
            lp_wallet_address=None,
            platform=platform_enum.value,
            merchant_info=merchant.to_dict(),
            description=description,
            network=network,
            status=S.CREATED.value,
            status_history=[entry.to_dict()],
            version=1,
            expires_at=now + self._ttl(),
            created_at=now,
            updated_at=now,
        )
        self.session.add(intent)
        await self.session.flush()
        await self.task_pool.upsert(intent, now)
        self.publish(
            IntentCreated(
                metadata=EventMetadata.create(actor_type="user"),
                intent_id=intent.id,
                amount=intent.amount,
                currency=intent.currency,
                platform=intent.platform,
                user_wallet=user,
            )
        )
        logger.info("Created intent=%s amount=%s platform=%s", intent.id, quote.amount, platform_enum.value)

        if lp is not None:
            intent = await self.claim(intent.id, lp.wallet_address, note="Assigned at creation", now=now)
        return intent

    def _ttl(self) -> timedelta:
        return timedelta(minutes=self.config.expiry.intent_ttl_minutes)

    # ------------------------------------------------------------------
    # Transition executor
    # ------------------------------------------------------------------

    async def _transition(
        self,
        intent: PaymentIntent,
        to_status: IntentStatus,
        *,
        source: HistorySource,
        note: str,
        now: datetime,
        changes: dict[str, Any] | None = None,
        cancellation: bool = False,
        side_effect: SideEffect | None = None,
    ) -> PaymentIntent:
        from_status = IntentStatus(intent.status)
        IntentStateMachine.validate_transition(from_status, to_status)

        entry = StatusHistoryEntry(
            status=to_status,
            timestamp=now,
            note=note,
            source=source,
            cancellation=cancellation,
        )
        previous_lp = intent.lp_wallet_address
        values: dict[str, Any] = dict(changes or {})
        if IntentStateMachine.clears_lp(from_status, to_status):
            values["lp_wallet_address"] = None
        values.update(
            status=to_status.value,
            status_history=[*intent.status_history, entry.to_dict()],
            version=intent.version + 1,
            updated_at=now,
        )

        result = await self.session.execute(
            update(PaymentIntent)
            .where(
                PaymentIntent.id == intent.id,
                PaymentIntent.status == from_status.value,
                PaymentIntent.version == intent.version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateTransition(from_status.value, to_status.value, "intent was modified concurrently")
        await self.session.refresh(intent)

        if side_effect is not None:
            await side_effect(intent)

        released: Decimal | None = None
        if IntentStateMachine.releases_quota(from_status, to_status):
            release = await self.ledger.release(intent.id, reason=f"{from_status.value}->{to_status.value}", now=now)
            if release.released:
                released = release.amount

        await self.task_pool.upsert(intent, now)

        pool_changed = (
            from_status == S.CREATED
            or to_status == S.CREATED
            or IntentStateMachine.in_task_pool(from_status) != IntentStateMachine.in_task_pool(to_status)
        )
        self.publish(
            IntentTransitioned(
                metadata=EventMetadata.create(actor_type=source.value),
                intent_id=intent.id,
                from_status=from_status.value,
                to_status=to_status.value,
                note=note,
                user_wallet=intent.user_wallet_address,
                lp_wallet=intent.lp_wallet_address,
                previous_lp=previous_lp if previous_lp != intent.lp_wallet_address else None,
                pool_changed=pool_changed,
                quota_released=released,
            )
        )
        logger.info(
            "Intent %s: %s -> %s (%s) %s",
            intent.id,
            from_status.value,
            to_status.value,
            source.value,
            note,
        )
        return intent

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    async def claim(
        self,
        intent_id: str,
        lp_wallet: str,
        *,
        note: str = "Claimed by LP",
        now: datetime | None = None,
    ) -> PaymentIntent:
        """created → claimed, locking the LP's quota.

        Raises:
            TaskAlreadyClaimed: The intent is no longer ``created``.
            InsufficientQuota: The LP cannot cover the amount.
        """
        now = now or utcnow()
        wallet = normalize_wallet(lp_wallet, "lp_wallet")
        intent = await self.get(intent_id)
        lp = await self.lps.get(wallet)
        if not lp.supports(intent.platform):
            raise ValidationError(f"LP does not support {intent.platform}")
        if intent.status != S.CREATED.value:
            raise TaskAlreadyClaimed(intent_id)

        async def lock_quota(claimed: PaymentIntent) -> None:
            await self.ledger.lock(lp_wallet=wallet, amount=claimed.amount, intent_id=claimed.id, now=now)

        try:
            return await self._transition(
                intent,
                S.CLAIMED,
                source=HistorySource.LP,
                note=note,
                now=now,
                changes={
                    "lp_wallet_address": wallet,
                    "lock_time": now,
                    "expires_at": now + self._ttl(),
                },
                side_effect=lock_quota,
            )
        except InvalidStateTransition as e:
            raise TaskAlreadyClaimed(intent_id) from e

    async def start_gateway_order(
        self,
        intent_id: str,
        *,
        order_id: str,
        gateway: str,
        payee_email: str | None,
        now: datetime | None = None,
    ) -> PaymentIntent:
        """claimed → processing, linking the gateway order."""
        now = now or utcnow()
        intent = await self.get(intent_id)
        if not order_id:
            raise ValidationError("gateway order id is required")

        async def link_order(processing: PaymentIntent) -> None:
            self.session.add(
                GatewayOrder(
                    order_id=order_id,
                    intent_id=processing.id,
                    gateway=gateway,
                    status="open",
                    created_at=now,
                )
            )
            await self.session.flush()

        details = intent.details
        details = ProcessingDetails(
            gateway=gateway,
            gateway_status="CREATED",
            cancelled_orders=details.cancelled_orders,
            anomalies=details.anomalies,
        )
        return await self._transition(
            intent,
            S.PROCESSING,
            source=HistorySource.GATEWAY,
            note=f"Gateway order {order_id} created",
            now=now,
            changes={
                "payment_proof": GatewayProof(order_id=order_id, payee_email=payee_email).to_dict(),
                "processing_details": details.to_dict(),
            },
            side_effect=link_order,
        )

    async def record_capture(
        self,
        intent_id: str,
        *,
        order_id: str,
        capture_id: str,
        now: datetime | None = None,
    ) -> PaymentIntent:
        """processing → paid after a successful gateway capture."""
        now = now or utcnow()
        intent = await self.get(intent_id)
        proof = intent.proof
        if not isinstance(proof, GatewayProof) or proof.order_id != order_id:
            raise ValidationError("order id does not match the intent's gateway order")

        async def mark_captured(paid: PaymentIntent) -> None:
            await self.close_order(order_id, status="captured", capture_id=capture_id, now=now)

        details = intent.details
        return await self._transition(
            intent,
            S.PAID,
            source=HistorySource.GATEWAY,
            note=f"Gateway capture {capture_id} completed",
            now=now,
            changes={
                "payment_proof": GatewayProof(
                    order_id=order_id, capture_id=capture_id, payee_email=proof.payee_email
                ).to_dict(),
                "processing_details": ProcessingDetails(
                    gateway=details.gateway,
                    gateway_status="COMPLETED",
                    cancelled_orders=details.cancelled_orders,
                    anomalies=details.anomalies,
                ).to_dict(),
            },
            side_effect=mark_captured,
        )

    async def mark_paid(
        self,
        intent_id: str,
        *,
        lp_wallet: str,
        proof: PaymentProof,
        note: str = "LP reported payment to merchant",
        now: datetime | None = None,
    ) -> PaymentIntent:
        """claimed/processing → paid, reported by the assigned LP."""
        now = now or utcnow()
        intent = await self.get(intent_id)
        if intent.lp_wallet_address != normalize_wallet(lp_wallet, "lp_wallet"):
            raise NotAuthorized("Only the assigned LP can mark this intent paid")
        return await self._transition(
            intent,
            S.PAID,
            source=HistorySource.LP,
            note=note,
            now=now,
            changes={"payment_proof": proof.to_dict()},
        )

    async def confirm(
        self,
        intent_id: str,
        *,
        source: HistorySource,
        proof: PaymentProof | None = None,
        actor_wallet: str | None = None,
        note: str = "Payment confirmed",
        now: datetime | None = None,
    ) -> PaymentIntent:
        """paid/processing → confirmed.

        Users confirm their own intents; gateway and chain reconcilers
        confirm on verified external state.
        """
        now = now or utcnow()
        intent = await self.get(intent_id)
        if source not in {HistorySource.USER, HistorySource.GATEWAY, HistorySource.CHAIN}:
            raise NotAuthorized(f"{source.value} cannot confirm intents")
        if source == HistorySource.USER and intent.user_wallet_address != normalize_wallet(
            actor_wallet, "user_wallet"
        ):
            raise NotAuthorized("Only the intent's user can confirm it")

        changes: dict[str, Any] = {
            "confirmed_at": now,
            "release_time": now + timedelta(hours=self.config.chain.settlement_lock_hours),
        }
        if proof is not None:
            changes["payment_proof"] = self._merge_proof(intent, proof).to_dict()

        async def record_stats(confirmed: PaymentIntent) -> None:
            if confirmed.lp_wallet_address:
                await self.lps.record_completed(confirmed.lp_wallet_address, confirmed.amount)

        return await self._transition(
            intent,
            S.CONFIRMED,
            source=source,
            note=note,
            now=now,
            changes=changes,
            side_effect=record_stats,
        )

    @staticmethod
    def _merge_proof(intent: PaymentIntent, proof: PaymentProof) -> PaymentProof:
        """Keep the gateway order id when a confirmation only adds a capture id."""
        existing = intent.proof
        if isinstance(proof, GatewayProof) and isinstance(existing, GatewayProof):
            return GatewayProof(
                order_id=existing.order_id,
                capture_id=proof.capture_id or existing.capture_id,
                payee_email=existing.payee_email,
            )
        return proof

    async def settle(
        self,
        intent_id: str,
        *,
        tx_hash: str | None,
        source: HistorySource = HistorySource.CHAIN,
        now: datetime | None = None,
    ) -> PaymentIntent:
        """confirmed → settled.

        ``tx_hash`` is None when the release was observed on chain rather
        than submitted by the engine.
        """
        now = now or utcnow()
        intent = await self.get(intent_id)
        note = f"Escrow released in {tx_hash}" if tx_hash else "Escrow release observed on chain"
        return await self._transition(
            intent,
            S.SETTLED,
            source=source,
            note=note,
            now=now,
            changes={"settlement_tx_hash": tx_hash, "withdrawal_time": now},
        )

    async def rollback(
        self,
        intent_id: str,
        *,
        reason: str,
        source: HistorySource,
        cancellation: bool = False,
        now: datetime | None = None,
    ) -> tuple[PaymentIntent, bool]:
        """Return an in-flight intent to ``created``.

        Releases quota, clears the LP, and retires any open gateway order.
        Returns ``(intent, changed)``; an intent already ``created`` is
        left untouched.
        """
        now = now or utcnow()
        intent = await self.get(intent_id)
        if intent.status == S.CREATED.value:
            return intent, False
        if IntentStatus(intent.status) not in IntentStateMachine.ROLLBACK_SOURCES:
            raise InvalidStateTransition(intent.status, S.CREATED.value, reason)

        details = intent.details
        order = await self.open_order(intent.id)
        proof = intent.proof
        if order is not None:
            details = details.with_cancelled_order(order.order_id)
        elif isinstance(proof, GatewayProof):
            details = details.with_cancelled_order(proof.order_id)

        async def retire_order(rolled_back: PaymentIntent) -> None:
            if order is not None:
                await self.close_order(order.order_id, status="cancelled", now=now)

        intent = await self._transition(
            intent,
            S.CREATED,
            source=source,
            note=reason,
            now=now,
            cancellation=cancellation,
            changes={
                "payment_proof": None,
                "processing_details": details.to_dict(),
                "lock_time": None,
                "expires_at": now + self._ttl(),
            },
            side_effect=retire_order,
        )
        return intent, True

    async def cancel(
        self,
        intent_id: str,
        *,
        requester_wallet: str,
        now: datetime | None = None,
    ) -> PaymentIntent:
        """User cancellation, allowed only from created/claimed."""
        now = now or utcnow()
        intent = await self.get(intent_id)
        if intent.user_wallet_address != normalize_wallet(requester_wallet, "requester_wallet"):
            raise NotAuthorized("Only the intent's user can cancel it")
        if IntentStatus(intent.status) not in IntentStateMachine.USER_CANCELLABLE:
            raise NotCancellable(intent.status)
        return await self._transition(
            intent,
            S.CANCELLED,
            source=HistorySource.USER,
            note="Cancelled by user",
            now=now,
            cancellation=True,
        )

    async def expire(self, intent_id: str, *, now: datetime | None = None) -> PaymentIntent:
        now = now or utcnow()
        intent = await self.get(intent_id)
        if IntentStatus(intent.status) not in IntentStateMachine.EXPIRABLE:
            raise InvalidStateTransition(intent.status, S.EXPIRED.value, "not expirable")
        return await self._transition(
            intent,
            S.EXPIRED,
            source=HistorySource.SWEEP,
            note="Payment intent expired",
            now=now,
        )

    async def fail(
        self,
        intent_id: str,
        *,
        reason: str,
        source: HistorySource,
        now: datetime | None = None,
    ) -> PaymentIntent:
        now = now or utcnow()
        intent = await self.get(intent_id)
        order = await self.open_order(intent.id)

        async def retire_order(failed: PaymentIntent) -> None:
            if order is not None:
                await self.close_order(order.order_id, status="cancelled", now=now)

        return await self._transition(
            intent, S.FAILED, source=source, note=reason, now=now, side_effect=retire_order
        )

    async def dispute(
        self,
        intent_id: str,
        *,
        reason: str,
        source: HistorySource,
        now: datetime | None = None,
    ) -> PaymentIntent:
        now = now or utcnow()
        intent = await self.get(intent_id)
        return await self._transition(intent, S.DISPUTED, source=source, note=reason, now=now)

    # ------------------------------------------------------------------
    # Non-transition writes
    # ------------------------------------------------------------------

    async def annotate(
        self,
        intent_id: str,
        *,
        note: str,
        source: HistorySource,
        cancellation: bool = False,
        now: datetime | None = None,
    ) -> PaymentIntent:
        """Append a same-status history entry (e.g. a pending cancellation)."""
        now = now or utcnow()
        intent = await self.get(intent_id)
        entry = StatusHistoryEntry(
            status=IntentStatus(intent.status),
            timestamp=now,
            note=note,
            source=source,
            cancellation=cancellation,
        )
        result = await self.session.execute(
            update(PaymentIntent)
            .where(PaymentIntent.id == intent.id, PaymentIntent.version == intent.version)
            .values(
                status_history=[*intent.status_history, entry.to_dict()],
                version=intent.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateTransition(intent.status, intent.status, "intent was modified concurrently")
        await self.session.refresh(intent)
        return intent

    async def update_details(self, intent: PaymentIntent, details: ProcessingDetails) -> PaymentIntent:
        """Replace reconciliation metadata without touching status or history."""
        result = await self.session.execute(
            update(PaymentIntent)
            .where(PaymentIntent.id == intent.id, PaymentIntent.version == intent.version)
            .values(processing_details=details.to_dict(), version=intent.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateTransition(intent.status, intent.status, "intent was modified concurrently")
        await self.session.refresh(intent)
        return intent

    async def assign_blockchain_payment_id(self, intent_id: str, payment_id: str) -> PaymentIntent:
        """Record the escrow key. Set once; re-sending the same id is a no-op."""
        if not payment_id:
            raise ValidationError("blockchain payment id is required")
        intent = await self.get(intent_id)
        if intent.blockchain_payment_id == payment_id:
            return intent
        if intent.blockchain_payment_id is not None:
            raise ValidationError("blockchain payment id is already assigned")
        clash = await self.session.execute(
            select(PaymentIntent.id).where(PaymentIntent.blockchain_payment_id == payment_id)
        )
        if clash.first() is not None:
            raise ValidationError("blockchain payment id belongs to another intent")
        result = await self.session.execute(
            update(PaymentIntent)
            .where(PaymentIntent.id == intent.id, PaymentIntent.blockchain_payment_id.is_(None))
            .values(blockchain_payment_id=payment_id, version=intent.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ValidationError("blockchain payment id was assigned concurrently")
        await self.session.refresh(intent)
        return intent

    async def close_order(
        self,
        order_id: str,
        *,
        status: str,
        now: datetime,
        capture_id: str | None = None,
    ) -> None:
        """Retire a gateway order as captured or cancelled."""
        values: dict[str, Any] = {"status": status, "closed_at": now}
        if capture_id is not None:
            values["capture_id"] = capture_id
        await self.session.execute(
            update(GatewayOrder)
            .where(GatewayOrder.order_id == order_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
