"""Domain event types for settlement operations.

All events are:
- Immutable (frozen dataclasses)
- Typed with explicit payloads
- Serializable for notification delivery

One event is produced per committed transition. Events are published
only after the transaction that produced them commits.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from unitpay_engine.domain.types import utcnow


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    INTENT = "intent"
    RECONCILIATION = "reconciliation"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    actor_type: str  # user / lp / gateway / chain / sweep / system
    source_service: str

    @classmethod
    def create(cls, actor_type: str = "system", source_service: str = "engine") -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=utcnow(),
            actor_type=actor_type,
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        """Event category for filtering."""
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        data = _serialize_dict(asdict(self))
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


def _serialize_dict(obj: Any) -> Any:
    """Recursively serialize objects for JSON compatibility."""
    if isinstance(obj, dict):
        return {k: _serialize_dict(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_serialize_dict(v) for v in obj]
    elif isinstance(obj, UUID):
        return str(obj)
    elif isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return str(obj)
    elif isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Intent Events
# =============================================================================


@dataclass(frozen=True)
class IntentCreated(DomainEvent):
    """A new payment intent entered the task pool."""

    intent_id: str
    amount: Decimal
    currency: str
    platform: str
    user_wallet: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.INTENT


@dataclass(frozen=True)
class IntentTransitioned(DomainEvent):
    """A payment intent moved between statuses.

    ``lp_wallet`` is the assignment after the transition; ``previous_lp``
    is set when the transition dropped an assignment.
    """

    intent_id: str
    from_status: str
    to_status: str
    note: str
    user_wallet: str
    lp_wallet: str | None
    previous_lp: str | None
    pool_changed: bool
    quota_released: Decimal | None = None

    @property
    def category(self) -> EventCategory:
        return EventCategory.INTENT


# =============================================================================
# Reconciliation Events
# =============================================================================


@dataclass(frozen=True)
class ReconciliationAnomaly(DomainEvent):
    """External state contradicted the ledger and needs an operator.

    Example: a capture completed for an order the user already cancelled.
    """

    intent_id: str | None
    system: str  # gateway / chain
    kind: str
    detail: str
    user_wallet: str | None = None

    @property
    def category(self) -> EventCategory:
        return EventCategory.RECONCILIATION
