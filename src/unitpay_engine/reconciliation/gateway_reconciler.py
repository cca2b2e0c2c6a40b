"""Gateway reconciler.

Aligns intent status with the payment gateway's authoritative order and
capture state. Two entry points feed it: webhook deliveries and polling
(on demand, e.g. when the client reports the approval popup closed).

Rules:
- Linkage is by stored order/capture id only. A caller-supplied intent id
  is used to find the order to poll, never to accept a gateway signal.
- Cancellation wins. A capture that completes for an order the intent
  already gave up is recorded as an anomaly, not confirmed.
- Re-delivery is a no-op: the current status and order state are
  checked before acting.
- Gateway calls happen outside any database transaction. A timeout is
  "unknown" and changes nothing; the next poll or sweep retries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from unitpay_engine.domain.payloads import GatewayProof
from unitpay_engine.domain.types import HistorySource, IntentStatus, utcnow
from unitpay_engine.events.types import EventMetadata, ReconciliationAnomaly
from unitpay_engine.exceptions import ExternalUnavailable, InvalidStateTransition, ValidationError
from unitpay_engine.gateway.base import OrderRequest, OrderResult, OrderStatus, PaymentGateway
from unitpay_engine.gateway.webhooks import GatewaySignal, SignalKind, parse_paypal_event
from unitpay_engine.models import GatewayOrder, PaymentIntent
from unitpay_engine.services.state_machine import IntentStateMachine
from unitpay_engine.services.unit_of_work import Transaction, UnitOfWork

logger = logging.getLogger(__name__)

S = IntentStatus


class ReconciliationStatus(str, Enum):
    """Result of feeding one signal or poll into the reconciler."""

    PROCESSED = "processed"  # Intent transitioned
    DUPLICATE = "duplicate"  # Already reflected (idempotent)
    PENDING = "pending"  # Gateway still waiting on the payer
    UNKNOWN = "unknown"  # Gateway unavailable; retried later
    IGNORED = "ignored"  # Unrecognised or unlinkable signal
    ANOMALY = "anomaly"  # Contradicts the ledger; needs an operator
    REJECTED = "rejected"  # Webhook failed verification


@dataclass
class ReconciliationOutcome:
    """What a reconciliation step did."""

    status: ReconciliationStatus
    intent_id: str | None = None
    previous_status: str | None = None
    new_status: str | None = None
    detail: str = ""

    @property
    def changed(self) -> bool:
        return self.status == ReconciliationStatus.PROCESSED


class GatewayReconciler:
    """Reconciles intents against one payment gateway."""

    def __init__(self, uow: UnitOfWork, gateway: PaymentGateway) -> None:
        self.uow = uow
        self.gateway = gateway

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def handle_webhook(
        self,
        payload: Any,
        headers: Mapping[str, str] | None = None,
    ) -> ReconciliationOutcome:
        """Process one webhook delivery. Never raises for bad or unlinkable signals."""
        try:
            verified = await self.gateway.verify_webhook(headers or {}, payload if isinstance(payload, dict) else {})
        except ExternalUnavailable as e:
            logger.warning("Webhook verification unavailable: %s", e)
            return ReconciliationOutcome(ReconciliationStatus.UNKNOWN, detail=str(e))
        if not verified:
            logger.warning("Rejected unverified %s webhook", self.gateway.name)
            return ReconciliationOutcome(ReconciliationStatus.REJECTED, detail="signature verification failed")

        signal = parse_paypal_event(payload)
        if signal.kind == SignalKind.UNKNOWN:
            logger.warning("Dropping gateway event %r: %s", signal.event_type, signal.detail or "not handled")
            return ReconciliationOutcome(ReconciliationStatus.IGNORED, detail=signal.event_type)
        return await self.apply_signal(signal)

    async def apply_signal(
        self,
        signal: GatewaySignal,
        *,
        source: HistorySource = HistorySource.GATEWAY,
    ) -> ReconciliationOutcome:
        """Apply a decoded signal in one transaction."""
        if not signal.linkable:
            logger.warning("Dropping %s: no order or capture id", signal.event_type)
            return ReconciliationOutcome(ReconciliationStatus.IGNORED, detail="no linkage")

        async with self.uow.begin() as tx:
            linked = await tx.intents.find_by_gateway_reference(
                capture_id=signal.capture_id,
                order_id=signal.order_id,
            )
            if linked is None:
                logger.warning(
                    "Dropping %s: no intent for order=%s capture=%s",
                    signal.event_type,
                    signal.order_id,
                    signal.capture_id,
                )
                return ReconciliationOutcome(ReconciliationStatus.IGNORED, detail="unlinked")

            intent, order = linked
            if signal.kind == SignalKind.CAPTURE_COMPLETED:
                return await self._on_capture_completed(tx, intent, order, signal.capture_id or order.capture_id)
            if signal.kind == SignalKind.ORDER_CANCELLED:
                return await self._on_cancelled(tx, intent, order, source=source)
            if signal.kind == SignalKind.CAPTURE_DENIED:
                return await self._on_denied(tx, intent, order)
            return await self._on_reversal(tx, intent, signal)

    async def _on_capture_completed(
        self,
        tx: Transaction,
        intent: PaymentIntent,
        order: GatewayOrder,
        capture_id: str | None,
    ) -> ReconciliationOutcome:
        status = IntentStatus(intent.status)
        if status in {S.CONFIRMED, S.SETTLED}:
            return _duplicate(intent)

        if order.status == "cancelled" or order.order_id in intent.details.cancelled_orders:
            return await self._record_anomaly(
                tx,
                intent,
                kind="late_capture",
                detail=f"capture {capture_id or '?'} completed for cancelled order {order.order_id}",
            )
        if status not in {S.PROCESSING, S.PAID}:
            return await self._record_anomaly(
                tx,
                intent,
                kind="late_capture",
                detail=f"capture {capture_id or '?'} completed while intent {status.value}",
            )

        now = utcnow()
        confirmed = await tx.intents.confirm(
            intent.id,
            source=HistorySource.GATEWAY,
            proof=GatewayProof(order_id=order.order_id, capture_id=capture_id),
            note=f"Gateway capture {capture_id or order.order_id} completed",
            now=now,
        )
        if order.status == "open":
            await tx.intents.close_order(order.order_id, status="captured", capture_id=capture_id, now=now)
        return _processed(status, confirmed)

    async def _on_cancelled(
        self,
        tx: Transaction,
        intent: PaymentIntent,
        order: GatewayOrder,
        *,
        source: HistorySource,
    ) -> ReconciliationOutcome:
        # A retired order cannot cancel a later attempt
        if intent.status == S.CREATED.value or order.status != "open":
            return _duplicate(intent)
        status = IntentStatus(intent.status)
        if status not in IntentStateMachine.ROLLBACK_SOURCES:
            logger.warning("Ignoring cancellation of order %s: intent %s is %s", order.order_id, intent.id, status.value)
            return ReconciliationOutcome(
                ReconciliationStatus.IGNORED,
                intent_id=intent.id,
                previous_status=status.value,
                new_status=status.value,
                detail="not cancellable",
            )
        rolled_back, _ = await tx.intents.rollback(
            intent.id,
            reason=f"[PAYMENT_CANCELLED] Gateway order {order.order_id} cancelled",
            source=source,
            cancellation=True,
        )
        return _processed(status, rolled_back)

    async def _on_denied(self, tx: Transaction, intent: PaymentIntent, order: GatewayOrder) -> ReconciliationOutcome:
        status = IntentStatus(intent.status)
        if status == S.FAILED:
            return _duplicate(intent)
        # a capture that already confirmed cannot be denied after the fact
        if status == S.CONFIRMED or not IntentStateMachine.can_transition(status, S.FAILED):
            return await self._record_anomaly(
                tx, intent, kind="late_denial", detail=f"capture denied for order {order.order_id} while {status.value}"
            )
        failed = await tx.intents.fail(
            intent.id,
            reason=f"Gateway denied capture for order {order.order_id}",
            source=HistorySource.GATEWAY,
        )
        return _processed(status, failed)

    async def _on_reversal(self, tx: Transaction, intent: PaymentIntent, signal: GatewaySignal) -> ReconciliationOutcome:
        status = IntentStatus(intent.status)
        label = "refunded" if signal.kind == SignalKind.CAPTURE_REFUNDED else "reversed"
        if status == S.DISPUTED:
            return _duplicate(intent)
        if not IntentStateMachine.can_transition(status, S.DISPUTED):
            return await self._record_anomaly(
                tx, intent, kind=f"capture_{label}", detail=f"capture {signal.capture_id} {label} after {status.value}"
            )
        disputed = await tx.intents.dispute(
            intent.id,
            reason=f"Gateway capture {signal.capture_id} {label}",
            source=HistorySource.GATEWAY,
        )
        return _processed(status, disputed)

    async def _record_anomaly(
        self,
        tx: Transaction,
        intent: PaymentIntent,
        *,
        kind: str,
        detail: str,
    ) -> ReconciliationOutcome:
        details = intent.details
        if detail in details.anomalies:
            return _duplicate(intent)
        await tx.intents.update_details(intent, details.with_anomaly(detail))
        tx.batch.add(
            ReconciliationAnomaly(
                metadata=EventMetadata.create(actor_type="gateway"),
                intent_id=intent.id,
                system="gateway",
                kind=kind,
                detail=detail,
                user_wallet=intent.user_wallet_address,
            )
        )
        logger.warning("Gateway anomaly on intent %s: %s", intent.id, detail)
        return ReconciliationOutcome(
            ReconciliationStatus.ANOMALY,
            intent_id=intent.id,
            previous_status=intent.status,
            new_status=intent.status,
            detail=detail,
        )

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll(self, intent_id: str) -> ReconciliationOutcome:
        """Fetch the open order's state from the gateway and apply it."""
        async with self.uow.begin() as tx:
            intent = await tx.intents.get(intent_id)
            order = await tx.intents.open_order(intent.id)
        if order is None:
            return ReconciliationOutcome(
                ReconciliationStatus.IGNORED,
                intent_id=intent.id,
                previous_status=intent.status,
                new_status=intent.status,
                detail="no open gateway order",
            )
        return await self._poll_order(intent, order.order_id, source=HistorySource.GATEWAY)

    async def _poll_order(
        self,
        intent: PaymentIntent,
        order_id: str,
        *,
        source: HistorySource,
    ) -> ReconciliationOutcome:
        try:
            result = await self.gateway.get_order_status(order_id)
        except ExternalUnavailable as e:
            logger.warning("Gateway poll for intent %s unavailable: %s", intent.id, e)
            return ReconciliationOutcome(
                ReconciliationStatus.UNKNOWN,
                intent_id=intent.id,
                previous_status=intent.status,
                new_status=intent.status,
                detail=str(e),
            )

        if result.status == OrderStatus.COMPLETED:
            signal = GatewaySignal(
                kind=SignalKind.CAPTURE_COMPLETED,
                event_type="poll",
                order_id=order_id,
                capture_id=result.capture_id,
            )
            return await self.apply_signal(signal, source=source)
        if result.status == OrderStatus.VOIDED:
            signal = GatewaySignal(kind=SignalKind.ORDER_CANCELLED, event_type="poll", order_id=order_id)
            return await self.apply_signal(signal, source=source)

        status = ReconciliationStatus.PENDING if result.status.is_pending else ReconciliationStatus.UNKNOWN
        return ReconciliationOutcome(
            status,
            intent_id=intent.id,
            previous_status=intent.status,
            new_status=intent.status,
            detail=f"order {order_id} is {result.status.value}",
        )

    async def report_client_cancellation(self, intent_id: str) -> ReconciliationOutcome:
        """The client saw the payer abandon checkout.

        ``claimed`` (or ``processing`` with no open order) rolls back at
        once. With an open order the gateway is asked first: VOIDED rolls
        back, COMPLETED confirms, anything else records a cancellation
        marker that the recovery sweep acts on after its grace window.

        Raises:
            IntentNotFound: No such intent.
        """
        async with self.uow.begin() as tx:
            intent = await tx.intents.get(intent_id)
            status = IntentStatus(intent.status)
            if status == S.CREATED:
                return _duplicate(intent)
            if status not in IntentStateMachine.ROLLBACK_SOURCES:
                return ReconciliationOutcome(
                    ReconciliationStatus.IGNORED,
                    intent_id=intent.id,
                    previous_status=status.value,
                    new_status=status.value,
                    detail="not cancellable",
                )
            order = await tx.intents.open_order(intent.id)
            if order is None:
                rolled_back, _ = await tx.intents.rollback(
                    intent.id,
                    reason="[PAYMENT_CANCELLED] Client reported cancellation",
                    source=HistorySource.USER,
                    cancellation=True,
                )
                return _processed(status, rolled_back)

        outcome = await self._poll_order(intent, order.order_id, source=HistorySource.USER)
        if outcome.status not in {ReconciliationStatus.PENDING, ReconciliationStatus.UNKNOWN}:
            return outcome

        async with self.uow.begin() as tx:
            current = await tx.intents.get(intent_id)
            if current.status != S.PROCESSING.value:
                return _duplicate(current)
            await tx.intents.annotate(
                intent_id,
                note=f"[PAYMENT_CANCELLED] Client reported cancellation; order {order.order_id} {outcome.detail}",
                source=HistorySource.USER,
                cancellation=True,
            )
        logger.info("Cancellation marker recorded for intent %s pending gateway confirmation", intent_id)
        outcome.detail = f"cancellation pending: {outcome.detail}"
        return outcome

    # ------------------------------------------------------------------
    # Order lifecycle
    # ------------------------------------------------------------------

    async def start_order(self, intent_id: str) -> tuple[PaymentIntent, OrderResult]:
        """Create a gateway order for a claimed intent (claimed -> processing).

        Raises:
            InvalidStateTransition: Intent is not ``claimed``.
            ExternalUnavailable: Gateway did not answer.
        """
        async with self.uow.begin() as tx:
            intent = await tx.intents.get(intent_id)
            if intent.status != S.CLAIMED.value:
                raise InvalidStateTransition(intent.status, S.PROCESSING.value, "intent must be claimed")
            request = OrderRequest(
                intent_id=intent.id,
                amount=intent.amount,
                currency=intent.currency,
                payee_email=intent.merchant.payee_email,
                description=intent.description,
            )

        result = await self.gateway.create_order(request)

        try:
            async with self.uow.begin() as tx:
                intent = await tx.intents.start_gateway_order(
                    intent_id,
                    order_id=result.order_id,
                    gateway=self.gateway.name,
                    payee_email=request.payee_email,
                )
        except InvalidStateTransition:
            logger.warning("Intent %s moved while order %s was created; order abandoned", intent_id, result.order_id)
            raise
        return intent, result

    async def capture_order(self, intent_id: str, order_id: str) -> ReconciliationOutcome:
        """Capture an approved order (processing -> paid).

        Raises:
            ValidationError: ``order_id`` is not the intent's open order.
            InvalidStateTransition: The gateway order is not capturable.
            ExternalUnavailable: Gateway did not answer.
        """
        async with self.uow.begin() as tx:
            intent = await tx.intents.get(intent_id)
            order = await tx.intents.open_order(intent.id)
            if order is None or order.order_id != order_id:
                raise ValidationError("order id does not match the intent's open gateway order")

        capture = await self.gateway.capture_order(order_id)
        if not capture.completed:
            raise InvalidStateTransition(
                intent.status,
                S.PAID.value,
                capture.message or f"gateway order is {capture.status.value}",
            )

        async with self.uow.begin() as tx:
            linked = await tx.intents.find_by_gateway_reference(order_id=order_id)
            if linked is None:
                raise ValidationError(f"gateway order {order_id} is not linked to an intent")
            intent, order = linked
            if order.status != "open" or intent.status != S.PROCESSING.value:
                return await self._record_anomaly(
                    tx,
                    intent,
                    kind="late_capture",
                    detail=f"capture {capture.capture_id} completed for cancelled order {order_id}",
                )
            paid = await tx.intents.record_capture(intent.id, order_id=order_id, capture_id=capture.capture_id or "")
            return _processed(S.PROCESSING, paid)


def _processed(previous: IntentStatus, intent: PaymentIntent) -> ReconciliationOutcome:
    return ReconciliationOutcome(
        ReconciliationStatus.PROCESSED,
        intent_id=intent.id,
        previous_status=previous.value,
        new_status=intent.status,
    )


def _duplicate(intent: PaymentIntent) -> ReconciliationOutcome:
    return ReconciliationOutcome(
        ReconciliationStatus.DUPLICATE,
        intent_id=intent.id,
        previous_status=intent.status,
        new_status=intent.status,
    )
