"""Periodic job scheduling for the sweeps.

Runs the recovery and expiry sweeps on the API process's event loop with
APScheduler. Each job is limited to one instance and missed runs are
coalesced; the sweeps' own running flags also guard against overlap when
a sweep is triggered manually.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from unitpay_engine.jobs.expiry_sweep import ExpirySweep
from unitpay_engine.jobs.recovery_sweep import RecoverySweep, SweepResult

logger = logging.getLogger(__name__)


class SweepScheduler:
    """Owns the AsyncIOScheduler that drives the sweeps."""

    def __init__(self, recovery: RecoverySweep, expiry: ExpirySweep) -> None:
        self.recovery = recovery
        self.expiry = expiry
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.is_running = False

    def start(self) -> None:
        """Register the jobs and start the scheduler. Must be called inside a running loop."""
        if self.is_running:
            logger.warning("Sweep scheduler already running")
            return

        self._add_job(
            "recovery_sweep",
            "Recovery sweep",
            self._guarded(self.recovery.run, "recovery"),
            self.recovery.config.interval_seconds,
        )
        self._add_job(
            "expiry_sweep",
            "Expiry sweep",
            self._guarded(self.expiry.run, "expiry"),
            self.expiry.config.interval_seconds,
        )
        self.scheduler.start()
        self.is_running = True
        logger.info(
            "Sweep scheduler started (recovery every %ss, expiry every %ss)",
            self.recovery.config.interval_seconds,
            self.expiry.config.interval_seconds,
        )

    def stop(self) -> None:
        if not self.is_running:
            return
        self.scheduler.shutdown(wait=False)
        self.is_running = False
        logger.info("Sweep scheduler stopped")

    def _add_job(self, job_id: str, name: str, func: Callable[[], Awaitable[Any]], seconds: int) -> None:
        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_id,
            name=name,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    @staticmethod
    def _guarded(run: Callable[[], Awaitable[SweepResult]], label: str) -> Callable[[], Awaitable[None]]:
        async def job() -> None:
            try:
                result = await run()
            except Exception:
                logger.exception("%s sweep crashed", label.capitalize())
                return
            if not result.success:
                logger.warning("%s sweep finished with %s errors", label.capitalize(), len(result.errors))

        return job
