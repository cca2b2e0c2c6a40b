"""Payment intent state machine with transition validation."""

from __future__ import annotations

from unitpay_engine.domain.types import LP_ASSIGNED_STATUSES, TERMINAL_STATUSES, IntentStatus
from unitpay_engine.exceptions import InvalidStateTransition

S = IntentStatus

_SIDE_EXITS = [S.CANCELLED, S.EXPIRED, S.FAILED, S.DISPUTED]


class IntentStateMachine:
    """State machine for payment intent status transitions.

    Forward path:
    - created → claimed → processing → paid → confirmed → settled
    - claimed → paid (LP pays off-gateway)
    - processing → confirmed (gateway capture completed)

    Rollback edges (quota released, LP cleared):
    - claimed → created
    - processing → created

    Side exits: cancelled, expired, failed, disputed from any non-terminal
    state. Which of them a given caller may take is decided by the
    narrower sets below (users cancel only before payment, the expiry
    sweep only touches unpaid intents).
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        S.CREATED: [S.CLAIMED, *_SIDE_EXITS],
        S.CLAIMED: [S.PROCESSING, S.PAID, S.CREATED, *_SIDE_EXITS],
        S.PROCESSING: [S.PAID, S.CONFIRMED, S.CREATED, *_SIDE_EXITS],
        S.PAID: [S.CONFIRMED, *_SIDE_EXITS],
        S.CONFIRMED: [S.SETTLED, *_SIDE_EXITS],
        S.SETTLED: [],
        S.CANCELLED: [],
        S.EXPIRED: [],
        S.FAILED: [],
        S.DISPUTED: [],
    }

    # Predecessors a user may cancel from
    USER_CANCELLABLE = {S.CREATED, S.CLAIMED}

    # Predecessors a gateway cancellation rolls back from
    ROLLBACK_SOURCES = {S.CREATED, S.CLAIMED, S.PROCESSING}

    # Statuses the expiry sweep acts on
    EXPIRABLE = {S.CREATED, S.CLAIMED, S.PROCESSING}

    # Statuses in which the LP's quota stays locked
    QUOTA_HOLDING = {S.CLAIMED, S.PROCESSING, S.PAID}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(IntentStatus(from_status), [])
        return IntentStatus(to_status) in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidStateTransition if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransition(IntentStatus(from_status).value, IntentStatus(to_status).value)

    @classmethod
    def predecessors(cls, to_status: str) -> set[IntentStatus]:
        """All statuses with a legal edge into ``to_status``."""
        target = IntentStatus(to_status)
        return {src for src, targets in cls.VALID_TRANSITIONS.items() if target in targets}

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return list(cls.VALID_TRANSITIONS.get(IntentStatus(current_status), []))

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return IntentStatus(status) in TERMINAL_STATUSES

    @classmethod
    def requires_lp(cls, status: str) -> bool:
        """Whether an LP must be assigned in this status."""
        return IntentStatus(status) in LP_ASSIGNED_STATUSES

    @classmethod
    def releases_quota(cls, from_status: str, to_status: str) -> bool:
        """Whether this edge ends the LP's exposure on the intent.

        Only edges leaving a quota-holding status release; a confirmed
        intent gave its quota back when it was confirmed.
        """
        return (
            IntentStatus(from_status) in cls.QUOTA_HOLDING
            and IntentStatus(to_status) not in cls.QUOTA_HOLDING
        )

    @classmethod
    def clears_lp(cls, from_status: str, to_status: str) -> bool:
        """Whether this edge drops the LP assignment."""
        return IntentStatus(to_status) == S.CREATED

    @classmethod
    def in_task_pool(cls, status: str) -> bool:
        """Whether an intent in this status is still discoverable by LPs."""
        return not cls.is_terminal(status)
