"""Tests for the recovery and expiry sweeps and their scheduler."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from unitpay_engine.domain.history import StatusHistoryEntry
from unitpay_engine.domain.types import IntentStatus, utcnow
from unitpay_engine.engine_config import SweepConfig
from unitpay_engine.jobs import SweepScheduler
from unitpay_engine.jobs.recovery_sweep import SweepResult, classify
from unitpay_engine.models import PaymentIntent

from .conftest import LP_WALLET

S = IntentStatus


def later(**kwargs):
    return utcnow() + timedelta(**kwargs)


def entry(status, seconds_ago, now, *, cancellation=False):
    return StatusHistoryEntry(
        status=status,
        timestamp=now - timedelta(seconds=seconds_ago),
        note="test",
        cancellation=cancellation,
    )


class TestClassify:
    """Classification of processing intents."""

    config = SweepConfig()

    def test_fresh_processing_left_alone(self):
        now = utcnow()
        history = [entry(S.CREATED, 60, now), entry(S.PROCESSING, 10, now)]
        assert classify(history, now - timedelta(seconds=10), now, self.config) is None

    def test_marker_inside_grace_window(self):
        now = utcnow()
        history = [entry(S.PROCESSING, 60, now), entry(S.PROCESSING, 5, now, cancellation=True)]
        assert classify(history, now - timedelta(seconds=5), now, self.config) is None

    def test_marker_after_grace_window(self):
        now = utcnow()
        history = [entry(S.PROCESSING, 60, now), entry(S.PROCESSING, 20, now, cancellation=True)]
        assert classify(history, now - timedelta(seconds=20), now, self.config) == "cancelled"

    def test_stalled(self):
        now = utcnow()
        history = [entry(S.PROCESSING, 400, now)]
        assert classify(history, now - timedelta(seconds=400), now, self.config) == "stalled"

    def test_marker_from_earlier_attempt_ignored(self):
        now = utcnow()
        history = [
            entry(S.PROCESSING, 120, now),
            entry(S.PROCESSING, 100, now, cancellation=True),
            entry(S.CREATED, 90, now, cancellation=True),
            entry(S.CLAIMED, 30, now),
            entry(S.PROCESSING, 5, now),
        ]
        assert classify(history, now - timedelta(seconds=5), now, self.config) is None

    def test_legacy_note_is_a_marker(self):
        now = utcnow()
        legacy = StatusHistoryEntry.from_dict(
            {
                "status": "processing",
                "timestamp": (now - timedelta(seconds=30)).isoformat(),
                "note": "[PAYMENT_CANCELLED] popup closed",
            }
        )
        assert legacy.cancellation is True
        assert classify([legacy], now - timedelta(seconds=30), now, self.config) == "cancelled"


@pytest.mark.asyncio
class TestRecoverySweep:
    async def test_cancelled_intent_reset_after_grace(self, engine, notifier, processing_intent):
        intent, _ = await processing_intent(amount="100")
        await engine.report_client_cancellation(intent.id)

        early = await engine.run_recovery_sweep(now=later(seconds=5))
        assert early.reset == 0
        assert (await engine.get_intent(intent.id)).status == "processing"

        result = await engine.run_recovery_sweep(now=later(seconds=20))

        assert result.reset_cancelled == 1
        assert result.success is True
        reset = await engine.get_intent(intent.id)
        assert reset.status == "created"
        assert reset.lp_wallet_address is None
        lp = await engine.get_lp(LP_WALLET)
        assert lp.locked_quota == Decimal("0")
        # The LP that lost the assignment is told about it
        assert any(event.get("previous_lp") == LP_WALLET for event in notifier.for_topic(LP_WALLET))

    async def test_stalled_intent_reset(self, engine, processing_intent):
        intent, _ = await processing_intent()

        quiet = await engine.run_recovery_sweep(now=later(seconds=100))
        assert quiet.reset == 0

        result = await engine.run_recovery_sweep(now=later(seconds=301))

        assert result.reset_stalled == 1
        assert (await engine.get_intent(intent.id)).status == "created"

    async def test_repeated_sweep_releases_once(self, engine, processing_intent):
        intent, _ = await processing_intent(amount="100")
        now = later(seconds=400)

        first = await engine.run_recovery_sweep(now=now)
        second = await engine.run_recovery_sweep(now=now)

        assert first.reset == 1
        assert second.reset == 0
        lp = await engine.get_lp(LP_WALLET)
        assert lp.available_quota == Decimal("1000")
        assert await engine.verify_quota_invariants() == []

    async def test_only_processing_is_scanned(self, engine, claimed_intent):
        intent = await claimed_intent()

        result = await engine.run_recovery_sweep(now=later(hours=1))

        assert result.intents_scanned == 0
        assert (await engine.get_intent(intent.id)).status == "claimed"

    async def test_orphaned_lock_released(self, engine, claimed_intent, session_factory):
        intent = await claimed_intent(amount="100")
        async with session_factory() as session, session.begin():
            await session.execute(
                update(PaymentIntent).where(PaymentIntent.id == intent.id).values(status="failed")
            )

        result = await engine.run_recovery_sweep()

        assert result.orphans_released == 1
        lp = await engine.get_lp(LP_WALLET)
        assert lp.locked_quota == Decimal("0")
        assert await engine.verify_quota_invariants() == []

    async def test_overlapping_run_skipped(self, engine):
        engine.recovery_sweep._running = True
        try:
            result = await engine.run_recovery_sweep()
        finally:
            engine.recovery_sweep._running = False
        assert result.ran is False


@pytest.mark.asyncio
class TestExpirySweep:
    async def test_created_intent_expires(self, engine, make_intent):
        intent = await make_intent()

        result = await engine.run_expiry_sweep(now=later(minutes=31))

        assert result.expired == 1
        expired = await engine.get_intent(intent.id)
        assert expired.status == "expired"
        assert await engine.task_pool() == []

    async def test_claimed_intent_expiry_releases_quota(self, engine, claimed_intent):
        intent = await claimed_intent(amount="100")

        await engine.run_expiry_sweep(now=later(minutes=31))

        assert (await engine.get_intent(intent.id)).status == "expired"
        lp = await engine.get_lp(LP_WALLET)
        assert lp.locked_quota == Decimal("0")

    async def test_not_yet_due(self, engine, make_intent):
        await make_intent()
        result = await engine.run_expiry_sweep(now=later(minutes=10))
        assert result.expired == 0

    async def test_paid_intent_never_expires(self, engine, claimed_intent):
        intent = await claimed_intent()
        await engine.mark_paid(intent.id, LP_WALLET, "ref")

        result = await engine.run_expiry_sweep(now=later(days=2))

        assert result.intents_scanned == 0
        assert (await engine.get_intent(intent.id)).status == "paid"

    async def test_claim_refreshes_ttl(self, engine, lp, make_intent):
        intent = await make_intent()
        async with engine.uow.begin() as tx:
            await tx.intents.claim(intent.id, LP_WALLET, now=later(minutes=20))

        result = await engine.run_expiry_sweep(now=later(minutes=31))

        assert result.expired == 0
        assert (await engine.get_intent(intent.id)).status == "claimed"


@pytest.mark.asyncio
class TestSweepScheduler:
    async def test_registers_both_jobs(self, engine):
        scheduler = engine.scheduler()
        scheduler.start()
        try:
            assert scheduler.is_running is True
            assert scheduler.scheduler.get_job("recovery_sweep") is not None
            assert scheduler.scheduler.get_job("expiry_sweep") is not None
        finally:
            scheduler.stop()
        assert scheduler.is_running is False

    async def test_job_failure_is_contained(self):
        async def crash() -> SweepResult:
            raise RuntimeError("database gone")

        job = SweepScheduler._guarded(crash, "recovery")
        await job()
