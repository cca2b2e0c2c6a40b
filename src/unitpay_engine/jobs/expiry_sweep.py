"""Expiry sweep.

Moves created, claimed and processing intents past their ``expires_at``
to ``expired``, releasing any locked quota and taking them out of the
task pool. Claiming refreshes ``expires_at``, so only abandoned work
expires.
"""

from __future__ import annotations

import logging
from datetime import datetime

from unitpay_engine.domain.types import utcnow
from unitpay_engine.engine_config import ExpiryConfig
from unitpay_engine.exceptions import InvalidStateTransition
from unitpay_engine.jobs.recovery_sweep import SweepResult
from unitpay_engine.services.state_machine import IntentStateMachine
from unitpay_engine.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class ExpirySweep:
    """Expires intents whose time-to-live has passed."""

    def __init__(self, uow: UnitOfWork, config: ExpiryConfig, *, batch_size: int = 500):
        self.uow = uow
        self.config = config
        self.batch_size = batch_size
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run(self, now: datetime | None = None) -> SweepResult:
        now = now or utcnow()
        result = SweepResult(started_at=now)
        if self._running:
            logger.info("Expiry sweep already running; skipping")
            result.ran = False
            return result

        self._running = True
        try:
            async with self.uow.begin() as tx:
                due = [(i.id, i.version) for i in await tx.intents.list_expired(now, limit=self.batch_size)]
            result.intents_scanned = len(due)

            for intent_id, version in due:
                try:
                    async with self.uow.begin() as tx:
                        intent = await tx.intents.get(intent_id)
                        if (
                            intent.version != version
                            or intent.status_enum not in IntentStateMachine.EXPIRABLE
                            or intent.expires_at is None
                            or intent.expires_at >= now
                        ):
                            result.skipped += 1
                            continue
                        await tx.intents.expire(intent_id, now=now)
                    result.expired += 1
                except InvalidStateTransition:
                    result.skipped += 1
                except Exception as e:
                    logger.exception("Expiry sweep failed for intent %s", intent_id)
                    result.failed += 1
                    result.errors.append({"intent_id": intent_id, "code": "EXPIRE_ERROR", "message": str(e)})
        finally:
            self._running = False

        if result.expired or result.failed:
            logger.info(
                "Expiry sweep: expired=%s skipped=%s failed=%s",
                result.expired,
                result.skipped,
                result.failed,
            )
        return result
