"""Typed status history entries.

The history log is append-only and stored as a JSON list on the intent
row. Each entry is tagged by the status it records. Cancellations carry
an explicit marker so the recovery sweep never has to guess from note
text; legacy notes containing a cancel keyword are still recognised when
decoding older rows.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from unitpay_engine.domain.types import HistorySource, IntentStatus

_LEGACY_CANCEL_MARKERS = ("cancel", "CANCEL", "PAYMENT_CANCELLED", "MANUAL_CANCEL")


@dataclass(frozen=True)
class StatusHistoryEntry:
    """One committed transition."""

    status: IntentStatus
    timestamp: datetime
    note: str
    source: HistorySource = HistorySource.SYSTEM
    cancellation: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON storage."""
        data: dict[str, Any] = {
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "note": self.note,
            "source": self.source.value,
        }
        if self.cancellation:
            data["cancellation"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StatusHistoryEntry:
        """Decode a stored entry."""
        note = str(data.get("note") or "")
        flagged = bool(data.get("cancellation", False))
        if not flagged:
            flagged = any(marker in note for marker in _LEGACY_CANCEL_MARKERS)
        try:
            source = HistorySource(data.get("source", HistorySource.SYSTEM.value))
        except ValueError:
            source = HistorySource.SYSTEM
        return cls(
            status=IntentStatus(data["status"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            note=note,
            source=source,
            cancellation=flagged,
        )


def decode_history(raw: Iterable[dict[str, Any]] | None) -> list[StatusHistoryEntry]:
    """Decode a stored history list."""
    return [StatusHistoryEntry.from_dict(item) for item in (raw or [])]


def current_run(entries: list[StatusHistoryEntry]) -> list[StatusHistoryEntry]:
    """Trailing entries that share the current status.

    For a processing intent this is the entry that moved it into processing
    plus any annotations recorded since; markers from earlier attempts are
    excluded.
    """
    if not entries:
        return []
    status = entries[-1].status
    start = len(entries)
    while start > 0 and entries[start - 1].status == status:
        start -= 1
    return entries[start:]


def has_cancellation_marker(entries: list[StatusHistoryEntry], tail: int) -> bool:
    """True if the current run's last ``tail`` entries carry a cancellation marker."""
    return any(entry.cancellation for entry in current_run(entries)[-tail:])
