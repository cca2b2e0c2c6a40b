"""Task pool projection.

A denormalised view of payment intents for LP discovery. Written after
every committed-to-be transition and rebuildable from payment_intent.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from unitpay_engine.domain.types import IntentStatus, utcnow
from unitpay_engine.models import PaymentIntent, TaskPoolEntry
from unitpay_engine.services.state_machine import IntentStateMachine

logger = logging.getLogger(__name__)


class TaskPoolService:
    """Maintains TaskPoolEntry rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert(self, intent: PaymentIntent, now: datetime | None = None) -> TaskPoolEntry:
        """Mirror the intent's current state into its pool entry."""
        entry = await self.session.get(TaskPoolEntry, intent.id, populate_existing=True)
        if entry is None:
            entry = TaskPoolEntry(intent_id=intent.id)
            self.session.add(entry)
        entry.amount = intent.amount
        entry.currency = intent.currency
        entry.platform = intent.platform
        entry.status = intent.status
        entry.user_wallet_address = intent.user_wallet_address
        entry.lp_wallet_address = intent.lp_wallet_address
        entry.expires_at = intent.expires_at
        entry.in_pool = IntentStateMachine.in_task_pool(intent.status)
        entry.updated_at = now or utcnow()
        await self.session.flush()
        return entry

    async def list_entries(
        self,
        *,
        lp_wallet: str | None = None,
        status: str | None = None,
        platforms: list[str] | None = None,
        include_closed: bool = False,
    ) -> list[TaskPoolEntry]:
        """Query the pool.

        With no filters this returns what an LP browses: open entries,
        oldest first. ``lp_wallet`` narrows to one LP's assignments.
        """
        stmt = select(TaskPoolEntry)
        if not include_closed:
            stmt = stmt.where(TaskPoolEntry.in_pool.is_(True))
        if lp_wallet is not None:
            stmt = stmt.where(TaskPoolEntry.lp_wallet_address == lp_wallet)
        if status is not None:
            stmt = stmt.where(TaskPoolEntry.status == IntentStatus(status).value)
        if platforms:
            stmt = stmt.where(TaskPoolEntry.platform.in_(platforms))
        result = await self.session.execute(stmt.order_by(TaskPoolEntry.updated_at))
        return list(result.scalars().all())

    async def rebuild(self) -> int:
        """Drop and regenerate every entry from payment_intent."""
        await self.session.execute(delete(TaskPoolEntry))
        result = await self.session.execute(select(PaymentIntent))
        count = 0
        now = utcnow()
        for intent in result.scalars():
            self.session.add(
                TaskPoolEntry(
                    intent_id=intent.id,
                    amount=intent.amount,
                    currency=intent.currency,
                    platform=intent.platform,
                    status=intent.status,
                    user_wallet_address=intent.user_wallet_address,
                    lp_wallet_address=intent.lp_wallet_address,
                    expires_at=intent.expires_at,
                    in_pool=IntentStateMachine.in_task_pool(intent.status),
                    updated_at=now,
                )
            )
            count += 1
        await self.session.flush()
        logger.info("Task pool rebuilt with %d entries", count)
        return count
