"""Settlement services."""

from unitpay_engine.services.fees import FeeQuote, quote_fee
from unitpay_engine.services.intent_service import IntentService
from unitpay_engine.services.lp_service import LiquidityProviderService
from unitpay_engine.services.quota_ledger import LockResult, QuotaLedger, QuotaViolation, ReleaseResult
from unitpay_engine.services.state_machine import IntentStateMachine
from unitpay_engine.services.task_pool import TaskPoolService
from unitpay_engine.services.unit_of_work import Transaction, UnitOfWork

__all__ = [
    "FeeQuote",
    "IntentService",
    "IntentStateMachine",
    "LiquidityProviderService",
    "LockResult",
    "QuotaLedger",
    "QuotaViolation",
    "ReleaseResult",
    "TaskPoolService",
    "Transaction",
    "UnitOfWork",
    "quote_fee",
]
