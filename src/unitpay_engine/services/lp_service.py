"""Liquidity provider registration and matching."""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from unitpay_engine.domain.types import Platform, normalize_wallet, utcnow
from unitpay_engine.exceptions import LiquidityProviderNotFound, ValidationError
from unitpay_engine.models import LiquidityProvider
from unitpay_engine.services.quota_ledger import QuotaLedger

logger = logging.getLogger(__name__)


class LiquidityProviderService:
    """LP lifecycle outside of quota locking."""

    def __init__(self, session: AsyncSession, ledger: QuotaLedger):
        self.session = session
        self.ledger = ledger

    async def register(
        self,
        *,
        wallet_address: str,
        total_quota: Decimal,
        per_transaction_quota: Decimal | None = None,
        fee_rate: Decimal = Decimal("0.5"),
        supported_platforms: list[str] | None = None,
        paypal_email: str | None = None,
        name: str | None = None,
        email: str | None = None,
    ) -> LiquidityProvider:
        """Register a new LP with all quota available."""
        wallet = normalize_wallet(wallet_address)
        if total_quota <= 0:
            raise ValidationError("total_quota must be positive")
        per_tx = total_quota if per_transaction_quota is None else per_transaction_quota
        if per_tx <= 0:
            raise ValidationError("per_transaction_quota must be positive")
        if fee_rate < 0 or fee_rate >= 100:
            raise ValidationError("fee_rate must be in [0, 100)")

        platforms = []
        for raw in supported_platforms or [Platform.PAYPAL.value]:
            try:
                platforms.append(Platform(raw).value)
            except ValueError as e:
                raise ValidationError(f"Unsupported platform '{raw}'") from e
        if Platform.PAYPAL.value in platforms and paypal_email and "@" not in paypal_email:
            raise ValidationError("paypal_email is not a valid email")

        if await self.session.get(LiquidityProvider, wallet) is not None:
            raise ValidationError(f"LP '{wallet}' is already registered")

        now = utcnow()
        lp = LiquidityProvider(
            wallet_address=wallet,
            name=name,
            email=email,
            paypal_email=paypal_email,
            supported_platforms=platforms,
            fee_rate=fee_rate,
            total_quota=total_quota,
            locked_quota=Decimal("0"),
            available_quota=total_quota,
            per_transaction_quota=per_tx,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        self.session.add(lp)
        await self.session.flush()
        logger.info("Registered lp=%s total_quota=%s", wallet, total_quota)
        return lp

    async def get(self, wallet_address: str) -> LiquidityProvider:
        """Load an LP with fresh quota values."""
        result = await self.session.execute(
            select(LiquidityProvider)
            .where(LiquidityProvider.wallet_address == wallet_address)
            .execution_options(populate_existing=True)
        )
        lp = result.scalars().first()
        if lp is None:
            raise LiquidityProviderNotFound(wallet_address)
        return lp

    async def update_quota(
        self,
        wallet_address: str,
        *,
        total_quota: Decimal | None = None,
        per_transaction_quota: Decimal | None = None,
    ) -> LiquidityProvider:
        """Change capacity. Total goes through the ledger's guard."""
        await self.get(wallet_address)
        if total_quota is not None:
            await self.ledger.set_total(wallet_address, total_quota)
        if per_transaction_quota is not None:
            if per_transaction_quota <= 0:
                raise ValidationError("per_transaction_quota must be positive")
            await self.session.execute(
                update(LiquidityProvider)
                .where(LiquidityProvider.wallet_address == wallet_address)
                .values(per_transaction_quota=per_transaction_quota, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        return await self.get(wallet_address)

    async def find_match(self, amount: Decimal, platform: Platform) -> LiquidityProvider | None:
        """Cheapest active LP that supports the platform and can cover ``amount``.

        Ties break on the largest available quota. This is a hint only; the
        quota lock itself re-checks capacity atomically.
        """
        result = await self.session.execute(
            select(LiquidityProvider)
            .where(
                LiquidityProvider.is_active.is_(True),
                LiquidityProvider.available_quota >= amount,
                LiquidityProvider.per_transaction_quota >= amount,
            )
            .order_by(LiquidityProvider.fee_rate, LiquidityProvider.available_quota.desc())
            .execution_options(populate_existing=True)
        )
        for lp in result.scalars():
            if lp.supports(platform.value):
                return lp
        return None

    async def record_completed(self, wallet_address: str, amount: Decimal) -> None:
        """Bump an LP's transaction statistics after a confirmed payment."""
        await self.session.execute(
            update(LiquidityProvider)
            .where(LiquidityProvider.wallet_address == wallet_address)
            .values(
                transaction_count=LiquidityProvider.transaction_count + 1,
                total_volume=LiquidityProvider.total_volume + amount,
            )
            .execution_options(synchronize_session=False)
        )
