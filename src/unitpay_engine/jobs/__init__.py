"""Periodic reconciliation jobs."""

from unitpay_engine.jobs.expiry_sweep import ExpirySweep
from unitpay_engine.jobs.recovery_sweep import RecoverySweep, SweepResult, classify
from unitpay_engine.jobs.scheduler import SweepScheduler

__all__ = [
    "ExpirySweep",
    "RecoverySweep",
    "SweepResult",
    "SweepScheduler",
    "classify",
]
