"""Quota Ledger - atomic LP capacity locking.

Provides the only write path for LP quota columns:
- lock: one guarded UPDATE that moves amount from available to locked
- release: the exact inverse, paired with the intent that took the lock
- set_total: capacity changes that keep available == total - locked
- verify: invariant check used by ops tooling and tests

Every lock row carries the id of the intent that caused it, so each lock
is released at most once and orphaned locks are findable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from unitpay_engine.domain.types import utcnow
from unitpay_engine.exceptions import InsufficientQuota, LiquidityProviderNotFound, ValidationError
from unitpay_engine.models import LiquidityProvider, PaymentIntent, QuotaLock

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class LockResult:
    """Result of a successful quota lock."""

    lock_id: str
    intent_id: str
    lp_wallet: str
    amount: Decimal


@dataclass(frozen=True)
class ReleaseResult:
    """Result of a release request.

    IMPORTANT: ``released=False`` is not an error. It means the intent held
    no active lock (never locked, or already released). Check ``duplicate``
    to tell a double release from a plain no-op.
    """

    intent_id: str
    released: bool
    amount: Decimal = ZERO
    lp_wallet: str | None = None
    duplicate: bool = False
    clamped: bool = False


@dataclass(frozen=True)
class QuotaViolation:
    """A broken quota invariant on one LP."""

    lp_wallet: str
    kind: str  # counter_mismatch / negative_locked / lock_sum_mismatch
    detail: str


class QuotaLedger:
    """LP quota ledger.

    Notes:
    - All counter changes are single-row UPDATEs guarded by the LP row.
    - available_quota is always written as total_quota - locked_quota.
    - Callers never do quota arithmetic themselves.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def lock(
        self,
        *,
        lp_wallet: str,
        amount: Decimal,
        intent_id: str,
        now: datetime | None = None,
    ) -> LockResult:
        """Lock ``amount`` of the LP's quota for ``intent_id``.

        Succeeds only if the LP is active, available_quota >= amount and
        per_transaction_quota >= amount, all checked by the UPDATE itself.

        Raises:
            InsufficientQuota: The guard rejected the lock.
            ValidationError: Non-positive amount, or intent already holds a lock.
        """
        if amount <= 0:
            raise ValidationError("lock amount must be positive")
        now = now or utcnow()

        if await self.active_lock(intent_id) is not None:
            raise ValidationError(f"Intent {intent_id} already holds an active quota lock")

        lp = LiquidityProvider
        new_locked = lp.locked_quota + amount
        result = await self.session.execute(
            update(lp)
            .where(
                lp.wallet_address == lp_wallet,
                lp.is_active.is_(True),
                lp.available_quota >= amount,
                lp.per_transaction_quota >= amount,
            )
            .values(
                locked_quota=new_locked,
                available_quota=lp.total_quota - new_locked,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            row = (
                await self.session.execute(
                    select(lp.available_quota, lp.per_transaction_quota).where(
                        lp.wallet_address == lp_wallet
                    )
                )
            ).first()
            if row is None:
                raise LiquidityProviderNotFound(lp_wallet)
            logger.info(
                "Quota lock rejected: lp=%s amount=%s available=%s per_tx=%s",
                lp_wallet,
                amount,
                row.available_quota,
                row.per_transaction_quota,
            )
            raise InsufficientQuota(lp_wallet, amount, row.available_quota)

        lock = QuotaLock(
            intent_id=intent_id,
            lp_wallet_address=lp_wallet,
            amount=amount,
            status="active",
            locked_at=now,
        )
        self.session.add(lock)
        await self.session.flush()

        logger.info("Locked %s of lp=%s for intent=%s", amount, lp_wallet, intent_id)
        return LockResult(lock_id=lock.lock_id, intent_id=intent_id, lp_wallet=lp_wallet, amount=amount)

    async def release(
        self,
        intent_id: str,
        *,
        reason: str,
        now: datetime | None = None,
    ) -> ReleaseResult:
        """Release the intent's active lock, if any.

        A missing or already-released lock is a reported no-op, never an
        error. The LP's locked_quota is clamped at zero.
        """
        now = now or utcnow()
        lock = await self.active_lock(intent_id)

        if lock is None:
            released_before = await self._released_lock_count(intent_id)
            if released_before:
                logger.warning("Double release ignored for intent=%s (reason=%s)", intent_id, reason)
            return ReleaseResult(intent_id=intent_id, released=False, duplicate=bool(released_before))

        result = await self.session.execute(
            update(QuotaLock)
            .where(QuotaLock.lock_id == lock.lock_id, QuotaLock.status == "active")
            .values(status="released", released_at=now, release_reason=reason)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("Lock %s for intent=%s was released concurrently", lock.lock_id, intent_id)
            return ReleaseResult(intent_id=intent_id, released=False, duplicate=True)

        clamped = await self._credit(lock.lp_wallet_address, lock.amount, now)
        logger.info(
            "Released %s of lp=%s for intent=%s (%s)",
            lock.amount,
            lock.lp_wallet_address,
            intent_id,
            reason,
        )
        return ReleaseResult(
            intent_id=intent_id,
            released=True,
            amount=lock.amount,
            lp_wallet=lock.lp_wallet_address,
            clamped=clamped,
        )

    async def _credit(self, lp_wallet: str, amount: Decimal, now: datetime) -> bool:
        """Move ``amount`` back from locked to available, floored at zero."""
        lp = LiquidityProvider
        current = (
            await self.session.execute(select(lp.locked_quota).where(lp.wallet_address == lp_wallet))
        ).scalar_one_or_none()
        clamped = current is not None and current < amount
        if clamped:
            logger.warning(
                "Over-release on lp=%s: locked=%s release=%s, clamping to zero",
                lp_wallet,
                current,
                amount,
            )

        new_locked = case((lp.locked_quota >= amount, lp.locked_quota - amount), else_=ZERO)
        await self.session.execute(
            update(lp)
            .where(lp.wallet_address == lp_wallet)
            .values(
                locked_quota=new_locked,
                available_quota=lp.total_quota - new_locked,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return clamped

    async def set_total(
        self,
        lp_wallet: str,
        total_quota: Decimal,
        *,
        now: datetime | None = None,
    ) -> None:
        """Change an LP's total capacity. Cannot drop below what is locked."""
        if total_quota < 0:
            raise ValidationError("total_quota cannot be negative")
        lp = LiquidityProvider
        result = await self.session.execute(
            update(lp)
            .where(lp.wallet_address == lp_wallet, lp.locked_quota <= total_quota)
            .values(
                total_quota=total_quota,
                available_quota=total_quota - lp.locked_quota,
                updated_at=now or utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            exists = (
                await self.session.execute(select(lp.wallet_address).where(lp.wallet_address == lp_wallet))
            ).first()
            if exists is None:
                raise LiquidityProviderNotFound(lp_wallet)
            raise ValidationError("total_quota cannot be less than the currently locked quota")

    async def active_lock(self, intent_id: str) -> QuotaLock | None:
        """The intent's active lock, loaded fresh from the database."""
        result = await self.session.execute(
            select(QuotaLock)
            .where(QuotaLock.intent_id == intent_id, QuotaLock.status == "active")
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def _released_lock_count(self, intent_id: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(QuotaLock)
            .where(QuotaLock.intent_id == intent_id, QuotaLock.status == "released")
        )
        return int(result.scalar_one())

    async def active_locks(self, lp_wallet: str | None = None) -> list[QuotaLock]:
        """All active locks, optionally for one LP."""
        stmt = select(QuotaLock).where(QuotaLock.status == "active")
        if lp_wallet is not None:
            stmt = stmt.where(QuotaLock.lp_wallet_address == lp_wallet)
        result = await self.session.execute(stmt.order_by(QuotaLock.locked_at))
        return list(result.scalars().all())

    async def orphaned_locks(self, exposed_statuses: set[str]) -> list[QuotaLock]:
        """Active locks whose intent is no longer in an LP-exposed status."""
        result = await self.session.execute(
            select(QuotaLock)
            .join(PaymentIntent, PaymentIntent.id == QuotaLock.intent_id)
            .where(QuotaLock.status == "active", PaymentIntent.status.not_in(sorted(exposed_statuses)))
            .order_by(QuotaLock.locked_at)
        )
        return list(result.scalars().all())

    async def verify(self, lp_wallet: str | None = None) -> list[QuotaViolation]:
        """Check counters and lock pairing for one or all LPs."""
        lp = LiquidityProvider
        stmt = select(lp.wallet_address, lp.total_quota, lp.locked_quota, lp.available_quota)
        if lp_wallet is not None:
            stmt = stmt.where(lp.wallet_address == lp_wallet)
        rows = (await self.session.execute(stmt)).all()

        sums_stmt = (
            select(QuotaLock.lp_wallet_address, func.coalesce(func.sum(QuotaLock.amount), 0))
            .where(QuotaLock.status == "active")
            .group_by(QuotaLock.lp_wallet_address)
        )
        lock_sums = {
            wallet: Decimal(str(total)).quantize(QUANTUM)
            for wallet, total in (await self.session.execute(sums_stmt)).all()
        }

        violations: list[QuotaViolation] = []
        for row in rows:
            if row.locked_quota < 0:
                violations.append(
                    QuotaViolation(row.wallet_address, "negative_locked", f"locked={row.locked_quota}")
                )
            if row.total_quota - row.locked_quota != row.available_quota:
                violations.append(
                    QuotaViolation(
                        row.wallet_address,
                        "counter_mismatch",
                        f"total={row.total_quota} locked={row.locked_quota} available={row.available_quota}",
                    )
                )
            locked_by_intents = lock_sums.get(row.wallet_address, ZERO)
            if locked_by_intents != row.locked_quota:
                violations.append(
                    QuotaViolation(
                        row.wallet_address,
                        "lock_sum_mismatch",
                        f"locked={row.locked_quota} active_locks={locked_by_intents}",
                    )
                )
        return violations
