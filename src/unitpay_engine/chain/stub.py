"""In-memory escrow for local development and testing.

Enforces the same withdraw preconditions as the deployed contract and
reports failures with the contract's revert strings.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable

from unitpay_engine.chain.base import (
    ZERO_ADDRESS,
    DryRunResult,
    EscrowRecord,
    EscrowStatus,
    WithdrawResult,
    decode_status_response,
)
from unitpay_engine.domain.types import utcnow
from unitpay_engine.exceptions import EscrowReverted, ExternalUnavailable


def _wallet(value: str) -> str:
    return value.lower() if value.startswith("0x") else value


class StubEscrow:
    """Escrow contract simulator.

    Tests drive payments through ``lock``/``confirm``/``dispute`` and can
    simulate an RPC outage with ``unavailable = True``.
    """

    name = "stub"

    def __init__(self, settlement_lock_hours: int = 24, clock: Callable[[], datetime] = utcnow):
        self.settlement_lock_hours = settlement_lock_hours
        self.clock = clock
        self.unavailable = False
        self.calls: list[str] = []
        self._payments: dict[str, dict[str, Any]] = {}

    def _check_available(self, operation: str) -> None:
        self.calls.append(operation)
        if self.unavailable:
            raise ExternalUnavailable(self.name, operation, "simulated RPC timeout")

    async def get_payment_status(self, payment_id: str) -> EscrowRecord:
        self._check_available("get_payment_status")
        record = self._payments.get(payment_id)
        if record is None:
            return decode_status_response(
                payment_id,
                (0, False, ZERO_ADDRESS, ZERO_ADDRESS, 0, 0, 0),
            )
        return EscrowRecord(payment_id=payment_id, **record)

    def _revert_reason(self, payment_id: str, caller: str) -> str | None:
        record = self._payments.get(payment_id)
        if record is None:
            return "Payment not found"
        if record["is_disputed"]:
            return "Payment is disputed"
        if record["status"] != EscrowStatus.CONFIRMED:
            return "Invalid payment status"
        due = record["release_time"] + timedelta(hours=self.settlement_lock_hours)
        if self.clock() < due:
            return "Auto release time not reached yet"
        if record["recipient"] != _wallet(caller):
            return "not owner"
        return None

    async def dry_run_withdraw(self, payment_id: str, caller: str) -> DryRunResult:
        self._check_available("dry_run_withdraw")
        reason = self._revert_reason(payment_id, caller)
        return DryRunResult(ok=reason is None, revert_reason=reason)

    async def withdraw(self, payment_id: str, caller: str) -> WithdrawResult:
        self._check_available("withdraw")
        reason = self._revert_reason(payment_id, caller)
        if reason is not None:
            raise EscrowReverted(payment_id, reason)
        self._payments[payment_id]["status"] = EscrowStatus.RELEASED
        return WithdrawResult(payment_id=payment_id, tx_hash="0x" + secrets.token_hex(32))

    # Test helpers

    def lock(self, payment_id: str, *, owner: str, recipient: str, amount: Decimal) -> None:
        """Simulate the user locking funds in escrow."""
        self._payments[payment_id] = {
            "status": EscrowStatus.LOCKED,
            "is_disputed": False,
            "owner": _wallet(owner),
            "recipient": _wallet(recipient),
            "amount": amount,
            "lock_time": self.clock(),
            "release_time": None,
        }

    def confirm(self, payment_id: str, at: datetime | None = None) -> None:
        """Simulate the user confirming receipt on chain."""
        record = self._payments[payment_id]
        record["status"] = EscrowStatus.CONFIRMED
        record["release_time"] = at or self.clock()

    def dispute(self, payment_id: str) -> None:
        self._payments[payment_id]["is_disputed"] = True

    def release(self, payment_id: str) -> None:
        """Simulate a withdraw submitted outside the engine."""
        self._payments[payment_id]["status"] = EscrowStatus.RELEASED
