"""Payment intent and task pool models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Boolean, CheckConstraint, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from unitpay_engine.domain.history import StatusHistoryEntry, decode_history
from unitpay_engine.domain.payloads import (
    MerchantInfo,
    PaymentProof,
    ProcessingDetails,
    decode_proof,
)
from unitpay_engine.domain.types import IntentStatus, Platform
from unitpay_engine.models.base import Base, TimestampMixin

_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in IntentStatus)


def _new_id() -> str:
    return str(uuid4())


class PaymentIntent(Base, TimestampMixin):
    """A request to pay a merchant through an LP, backed by escrow.

    Only the intent service writes ``status``, ``status_history``,
    ``lp_wallet_address`` and ``version``; every write is a guarded UPDATE.
    """

    __tablename__ = "payment_intent"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)

    # Financial terms, fixed at creation
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    fee_rate: Mapped[Decimal] = mapped_column(nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)

    # Parties
    user_wallet_address: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    lp_wallet_address: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # Platform linkage
    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    merchant_info: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Settlement linkage
    payment_proof: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    processing_details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    settlement_tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    blockchain_payment_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    network: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=IntentStatus.CREATED.value)
    status_history: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    lock_time: Mapped[datetime | None] = mapped_column(nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    release_time: Mapped[datetime | None] = mapped_column(nullable=True)
    withdrawal_time: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="payment_intent_status_check"),
        CheckConstraint("amount > 0", name="payment_intent_amount_positive"),
        Index("ix_payment_intent_status_updated", "status", "updated_at"),
    )

    @property
    def status_enum(self) -> IntentStatus:
        return IntentStatus(self.status)

    @property
    def platform_enum(self) -> Platform:
        return Platform(self.platform)

    @property
    def history(self) -> list[StatusHistoryEntry]:
        """Decoded, typed status history."""
        return decode_history(self.status_history)

    @property
    def proof(self) -> PaymentProof | None:
        return decode_proof(self.payment_proof)

    @property
    def details(self) -> ProcessingDetails:
        return ProcessingDetails.from_dict(self.processing_details)

    @property
    def merchant(self) -> MerchantInfo:
        return MerchantInfo.from_dict(self.merchant_info)


class TaskPoolEntry(Base):
    """Denormalised, LP-facing projection of a payment intent.

    A cache rebuildable from payment_intent at any time.
    """

    __tablename__ = "task_pool_entry"

    intent_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    user_wallet_address: Mapped[str] = mapped_column(String(64), nullable=False)
    lp_wallet_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    in_pool: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)


class GatewayOrder(Base):
    """Link from a gateway order (and its capture) to the intent it pays.

    Orders are never deleted: a cancelled order keeps its row so a late
    capture on it can still be linked and reported.
    """

    __tablename__ = "gateway_order"

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    intent_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("payment_intent.id"), nullable=False, index=True
    )
    gateway: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")
    capture_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    closed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'captured', 'cancelled')",
            name="gateway_order_status_check",
        ),
    )
