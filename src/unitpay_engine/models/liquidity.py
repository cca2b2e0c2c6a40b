"""Liquidity provider and quota lock models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Boolean, CheckConstraint, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from unitpay_engine.models.base import Base, TimestampMixin


class LiquidityProvider(Base, TimestampMixin):
    """An LP and its escrow-backed capacity.

    Quota columns are written only by the quota ledger, each time as a
    single guarded UPDATE that keeps available == total - locked.
    """

    __tablename__ = "liquidity_provider"

    wallet_address: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    paypal_email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    supported_platforms: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    fee_rate: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0.5"))

    total_quota: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    locked_quota: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    available_quota: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    per_transaction_quota: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_volume: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    __table_args__ = (
        CheckConstraint("locked_quota >= 0", name="lp_locked_quota_non_negative"),
        CheckConstraint("available_quota >= 0", name="lp_available_quota_non_negative"),
    )

    def supports(self, platform: str) -> bool:
        return platform in (self.supported_platforms or [])


class QuotaLock(Base):
    """One lock of LP quota, paired with the intent that caused it.

    An intent holds at most one active lock. Releasing flips status to
    'released' under a status guard, so a lock is released at most once.
    """

    __tablename__ = "quota_lock"

    lock_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    intent_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("payment_intent.id"), nullable=False, index=True
    )
    lp_wallet_address: Mapped[str] = mapped_column(
        String(64), ForeignKey("liquidity_provider.wallet_address"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    locked_at: Mapped[datetime] = mapped_column(nullable=False)
    released_at: Mapped[datetime | None] = mapped_column(nullable=True)
    release_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'released')", name="quota_lock_status_check"),
        CheckConstraint("amount > 0", name="quota_lock_amount_positive"),
        Index(
            "uq_quota_lock_active_intent",
            "intent_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )
