"""Escrow client protocol and typed chain results.

The escrow contract is addressed by an on-chain payment id that is
distinct from the intent id. Two introspection shapes exist across
deployed contract versions:

- a direct status view returning
  (status, is_disputed, owner, recipient, amount, lock_time, release_time)
- no status view at all, in which case status is inferred from a dry run
  of the withdraw call and its revert reason

Responses are decoded into EscrowRecord; a field the deployment does not
return decodes to None instead of raising.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any, Mapping, Protocol, Sequence

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_STATUS_FIELDS = ("status", "is_disputed", "owner", "recipient", "amount", "lock_time", "release_time")
_CAMEL_FIELDS = {
    "isDisputed": "is_disputed",
    "lockTime": "lock_time",
    "releaseTime": "release_time",
}


class EscrowStatus(IntEnum):
    """Escrow status codes as stored by the contract."""

    NONE = 0
    LOCKED = 1
    CONFIRMED = 2
    RELEASED = 3
    REFUNDED = 4

    @classmethod
    def parse(cls, raw: Any) -> EscrowStatus | None:
        """Decode a status code; absent or out-of-range is None."""
        if raw is None or isinstance(raw, bool):
            return None
        try:
            return cls(int(raw))
        except (TypeError, ValueError):
            return None


class RevertCause(str, Enum):
    """Classified reasons a dry-run withdraw reverted."""

    NOT_FOUND = "not_found"
    INVALID_STATUS = "invalid_status"
    NOT_OWNER = "not_owner"
    DISPUTED = "disputed"
    NOT_DUE = "not_due"


# Checked in order; first match wins
_REVERT_PATTERNS: list[tuple[RevertCause, re.Pattern[str]]] = [
    (RevertCause.NOT_FOUND, re.compile(r"payment not found|not\s*found", re.IGNORECASE)),
    (RevertCause.DISPUTED, re.compile(r"disput", re.IGNORECASE)),
    (RevertCause.NOT_OWNER, re.compile(r"not owner|unauthori[sz]ed|not the recipient", re.IGNORECASE)),
    (RevertCause.NOT_DUE, re.compile(r"not ?due|release time|lock period", re.IGNORECASE)),
    (RevertCause.INVALID_STATUS, re.compile(r"invalid ?(payment )?status", re.IGNORECASE)),
]


def classify_revert(reason: str | None) -> RevertCause | None:
    """Map a decoded revert reason onto a known cause, or None."""
    if not reason:
        return None
    for cause, pattern in _REVERT_PATTERNS:
        if pattern.search(reason):
            return cause
    return None


def _timestamp(raw: Any) -> datetime | None:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    try:
        seconds = int(raw)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _address(raw: Any) -> str | None:
    if not isinstance(raw, str) or not raw:
        return None
    if raw.startswith("0x"):
        return raw.lower()
    return raw


def _amount(raw: Any, decimals: int) -> Decimal | None:
    if raw is None:
        return None
    if isinstance(raw, Decimal):
        return raw
    try:
        return Decimal(int(raw)) / (Decimal(10) ** decimals)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class EscrowRecord:
    """Decoded direct status query.

    ``release_time`` is the on-chain confirmation time; funds become
    withdrawable one settlement lock period after it.
    """

    payment_id: str
    status: EscrowStatus | None
    is_disputed: bool | None = None
    owner: str | None = None
    recipient: str | None = None
    amount: Decimal | None = None
    lock_time: datetime | None = None
    release_time: datetime | None = None

    @property
    def found(self) -> bool:
        return not (self.status in {None, EscrowStatus.NONE} and self.owner in {None, ZERO_ADDRESS})


def decode_status_response(
    payment_id: str,
    raw: Mapping[str, Any] | Sequence[Any] | None,
    *,
    decimals: int = 6,
) -> EscrowRecord:
    """Decode a status view result given as a named mapping or a positional tuple."""
    if raw is None:
        return EscrowRecord(payment_id=payment_id, status=None)

    values: dict[str, Any]
    if isinstance(raw, Mapping):
        values = {_CAMEL_FIELDS.get(k, k): v for k, v in raw.items()}
    else:
        values = dict(zip(_STATUS_FIELDS, raw))

    disputed = values.get("is_disputed")
    return EscrowRecord(
        payment_id=payment_id,
        status=EscrowStatus.parse(values.get("status")),
        is_disputed=bool(disputed) if disputed is not None else None,
        owner=_address(values.get("owner")),
        recipient=_address(values.get("recipient")),
        amount=_amount(values.get("amount"), decimals),
        lock_time=_timestamp(values.get("lock_time")),
        release_time=_timestamp(values.get("release_time")),
    )


@dataclass(frozen=True)
class DryRunResult:
    """Outcome of simulating the withdraw call."""

    ok: bool
    revert_reason: str | None = None

    @property
    def cause(self) -> RevertCause | None:
        return None if self.ok else classify_revert(self.revert_reason)


@dataclass(frozen=True)
class WithdrawResult:
    """A submitted withdraw transaction."""

    payment_id: str
    tx_hash: str


class EscrowClient(Protocol):
    """Protocol for escrow contract clients.

    Every call is bounded by the client's timeout and raises
    ExternalUnavailable on timeout or transport failure.
    """

    name: str

    async def get_payment_status(self, payment_id: str) -> EscrowRecord:
        """Direct status view."""
        ...

    async def dry_run_withdraw(self, payment_id: str, caller: str) -> DryRunResult:
        """Simulate withdraw from ``caller`` without submitting."""
        ...

    async def withdraw(self, payment_id: str, caller: str) -> WithdrawResult:
        """Submit the withdraw transaction.

        Raises EscrowReverted when the contract rejects it.
        """
        ...
