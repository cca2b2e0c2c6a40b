"""Transaction-scoped service wiring.

One unit of work is one database transaction plus one event batch. The
services it hands out share the session, so a transition and its quota
and task pool side effects commit or roll back together; events reach
subscribers only after the commit.

Usage:
    uow = UnitOfWork(session_factory, config, emitter)

    async with uow.begin() as tx:
        intent = await tx.intents.claim(intent_id, lp_wallet)
    # committed; IntentTransitioned delivered
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from unitpay_engine.engine_config import EngineConfig
from unitpay_engine.events.emitter import AsyncEventBatch, AsyncEventEmitter
from unitpay_engine.services.intent_service import IntentService
from unitpay_engine.services.lp_service import LiquidityProviderService
from unitpay_engine.services.quota_ledger import QuotaLedger
from unitpay_engine.services.task_pool import TaskPoolService


@dataclass
class Transaction:
    """Services bound to one open transaction."""

    session: AsyncSession
    batch: AsyncEventBatch
    ledger: QuotaLedger
    task_pool: TaskPoolService
    lps: LiquidityProviderService
    intents: IntentService


class UnitOfWork:
    """Opens transactions with fully wired services."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: EngineConfig,
        emitter: AsyncEventEmitter,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.emitter = emitter

    @asynccontextmanager
    async def begin(self) -> AsyncIterator[Transaction]:
        async with self.emitter.batch() as batch:
            async with self.session_factory() as session, session.begin():
                ledger = QuotaLedger(session)
                task_pool = TaskPoolService(session)
                lps = LiquidityProviderService(session, ledger)
                intents = IntentService(
                    session,
                    config=self.config,
                    ledger=ledger,
                    task_pool=task_pool,
                    lps=lps,
                    publish=batch.add,
                )
                yield Transaction(
                    session=session,
                    batch=batch,
                    ledger=ledger,
                    task_pool=task_pool,
                    lps=lps,
                    intents=intents,
                )
