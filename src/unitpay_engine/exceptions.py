"""Error taxonomy for the settlement engine.

Validation and state errors are raised synchronously with no partial
effects (the surrounding transaction is rolled back). External-system
errors are raised by adapters as ExternalUnavailable and swallowed at
the reconciler boundary.
"""

from __future__ import annotations

from decimal import Decimal


class SettlementError(Exception):
    """Base class for all engine errors."""


class ValidationError(SettlementError):
    """Malformed or missing input, rejected before any mutation."""


class IntentNotFound(ValidationError):
    """No payment intent exists with the given id."""

    def __init__(self, intent_id: str):
        self.intent_id = intent_id
        super().__init__(f"Payment intent '{intent_id}' not found")


class LiquidityProviderNotFound(ValidationError):
    """No liquidity provider is registered under the given wallet."""

    def __init__(self, wallet_address: str):
        self.wallet_address = wallet_address
        super().__init__(f"Liquidity provider '{wallet_address}' not found")


class InvalidStateTransition(SettlementError):
    """Raised when a transition is attempted from an illegal predecessor."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class NotCancellable(InvalidStateTransition):
    """User cancellation requested outside created/claimed."""

    def __init__(self, from_status: str):
        super().__init__(from_status, "cancelled", "only created or claimed intents can be cancelled")


class InsufficientQuota(SettlementError):
    """The LP cannot cover the requested amount."""

    def __init__(self, lp_wallet: str, requested: Decimal, available: Decimal | None = None):
        self.lp_wallet = lp_wallet
        self.requested = requested
        self.available = available
        msg = f"LP '{lp_wallet}' cannot lock {requested}"
        if available is not None:
            msg += f" (available {available})"
        super().__init__(msg)


class TaskAlreadyClaimed(SettlementError):
    """A concurrent claim won the race for this intent."""

    def __init__(self, intent_id: str):
        self.intent_id = intent_id
        super().__init__(f"Payment intent '{intent_id}' is no longer claimable")


class NotAuthorized(SettlementError):
    """The caller is not a party allowed to perform this action."""


class ExternalUnavailable(SettlementError):
    """A gateway or chain call timed out or errored. Outcome is unknown."""

    def __init__(self, system: str, operation: str, detail: str = ""):
        self.system = system
        self.operation = operation
        self.detail = detail
        msg = f"{system} {operation} unavailable"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class Unreconcilable(SettlementError):
    """External state could not be mapped onto any known cause."""


class WithdrawalNotAuthorized(SettlementError):
    """One or more withdrawal preconditions failed."""

    def __init__(self, intent_id: str, reasons: list[str]):
        self.intent_id = intent_id
        self.reasons = reasons
        super().__init__(f"Withdrawal for '{intent_id}' not authorized: {', '.join(reasons)}")


class EscrowReverted(SettlementError):
    """The escrow contract rejected a mutating call."""

    def __init__(self, payment_id: str, reason: str):
        self.payment_id = payment_id
        self.reason = reason
        super().__init__(f"Escrow call for '{payment_id}' reverted: {reason}")
