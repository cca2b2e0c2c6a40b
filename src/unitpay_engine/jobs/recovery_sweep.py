"""Recovery sweep.

Periodically resets ``processing`` intents that will not complete on
their own:

(a) explicitly cancelled: a cancellation marker in the current run of
    history, older than ``cancel_grace_seconds``. The grace window lets a
    confirmation that was already in flight land first.
(b) stalled: no marker and no update for ``stall_timeout_seconds``.

Reset is the ``processing -> created`` transition: quota released, LP
cleared, task pool upserted, subscribers notified. Each reset runs in its
own transaction and re-checks the version it classified, so overlapping
runs or a racing webhook cannot release quota twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from unitpay_engine.domain.history import StatusHistoryEntry, current_run
from unitpay_engine.domain.types import HistorySource, IntentStatus, utcnow
from unitpay_engine.engine_config import SweepConfig
from unitpay_engine.exceptions import InvalidStateTransition
from unitpay_engine.services.state_machine import IntentStateMachine
from unitpay_engine.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Result of one sweep run."""

    started_at: datetime
    ran: bool = True
    intents_scanned: int = 0
    reset_cancelled: int = 0
    reset_stalled: int = 0
    expired: int = 0
    orphans_released: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """Whether the run completed without per-intent errors."""
        return self.failed == 0 and len(self.errors) == 0

    @property
    def reset(self) -> int:
        return self.reset_cancelled + self.reset_stalled


@dataclass(frozen=True)
class _Candidate:
    intent_id: str
    version: int
    reason: str  # "cancelled" | "stalled"


def classify(
    history: list[StatusHistoryEntry],
    updated_at: datetime,
    now: datetime,
    config: SweepConfig,
) -> str | None:
    """Decide whether a processing intent is due for reset.

    Returns "cancelled", "stalled", or None to leave it alone.
    """
    run = current_run(history)[-config.history_tail:]
    markers = [entry for entry in run if entry.cancellation]
    if markers:
        if now - markers[-1].timestamp >= timedelta(seconds=config.cancel_grace_seconds):
            return "cancelled"
        return None

    last_activity = max([updated_at, *(entry.timestamp for entry in run)])
    if now - last_activity >= timedelta(seconds=config.stall_timeout_seconds):
        return "stalled"
    return None


class RecoverySweep:
    """Resets cancelled and stalled processing intents."""

    def __init__(self, uow: UnitOfWork, config: SweepConfig, *, batch_size: int = 500):
        self.uow = uow
        self.config = config
        self.batch_size = batch_size
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run(self, now: datetime | None = None) -> SweepResult:
        """Run one sweep cycle. A call made while a cycle is running is skipped."""
        now = now or utcnow()
        result = SweepResult(started_at=now)
        if self._running:
            logger.info("Recovery sweep already running; skipping")
            result.ran = False
            return result

        self._running = True
        try:
            candidates = await self._scan(now, result)
            for candidate in candidates:
                await self._reset(candidate, now, result)
            await self._release_orphans(now, result)
        finally:
            self._running = False

        if result.reset or result.orphans_released or result.failed:
            logger.info(
                "Recovery sweep: scanned=%s cancelled=%s stalled=%s orphans=%s skipped=%s failed=%s",
                result.intents_scanned,
                result.reset_cancelled,
                result.reset_stalled,
                result.orphans_released,
                result.skipped,
                result.failed,
            )
        return result

    async def _scan(self, now: datetime, result: SweepResult) -> list[_Candidate]:
        candidates: list[_Candidate] = []
        async with self.uow.begin() as tx:
            intents = await tx.intents.list_by_status({IntentStatus.PROCESSING}, limit=self.batch_size)
            for intent in intents:
                result.intents_scanned += 1
                try:
                    reason = classify(intent.history, intent.updated_at, now, self.config)
                except Exception as e:
                    logger.exception("Recovery sweep could not classify intent %s", intent.id)
                    result.failed += 1
                    result.errors.append({"intent_id": intent.id, "code": "CLASSIFY_ERROR", "message": str(e)})
                    continue
                if reason is not None:
                    candidates.append(_Candidate(intent.id, intent.version, reason))
        return candidates

    async def _reset(self, candidate: _Candidate, now: datetime, result: SweepResult) -> None:
        if candidate.reason == "cancelled":
            note = "[RECOVERY] Reset after cancellation grace period"
        else:
            note = f"[RECOVERY] Reset after {self.config.stall_timeout_seconds}s without progress"
        try:
            async with self.uow.begin() as tx:
                intent = await tx.intents.get(candidate.intent_id)
                if intent.version != candidate.version or intent.status != IntentStatus.PROCESSING.value:
                    result.skipped += 1
                    return
                _, changed = await tx.intents.rollback(
                    candidate.intent_id,
                    reason=note,
                    source=HistorySource.SWEEP,
                    now=now,
                )
        except InvalidStateTransition:
            # Another writer moved the intent first
            result.skipped += 1
            return
        except Exception as e:
            logger.exception("Recovery sweep failed to reset intent %s", candidate.intent_id)
            result.failed += 1
            result.errors.append({"intent_id": candidate.intent_id, "code": "RESET_ERROR", "message": str(e)})
            return

        if not changed:
            result.skipped += 1
        elif candidate.reason == "cancelled":
            result.reset_cancelled += 1
        else:
            result.reset_stalled += 1

    async def _release_orphans(self, now: datetime, result: SweepResult) -> None:
        """Release active locks whose intent no longer holds LP exposure."""
        holding = {s.value for s in IntentStateMachine.QUOTA_HOLDING}
        async with self.uow.begin() as tx:
            orphans = [lock.intent_id for lock in await tx.ledger.orphaned_locks(holding)]
        for intent_id in orphans:
            try:
                async with self.uow.begin() as tx:
                    release = await tx.ledger.release(intent_id, reason="orphaned lock", now=now)
            except Exception as e:
                logger.exception("Recovery sweep failed to release orphaned lock for intent %s", intent_id)
                result.failed += 1
                result.errors.append({"intent_id": intent_id, "code": "ORPHAN_ERROR", "message": str(e)})
                continue
            if release.released:
                logger.warning("Released orphaned lock of %s for intent %s", release.amount, intent_id)
                result.orphans_released += 1
