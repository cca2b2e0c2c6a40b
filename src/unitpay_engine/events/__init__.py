"""Domain events and notification fan-out."""

from unitpay_engine.events.emitter import AsyncEventBatch, AsyncEventEmitter
from unitpay_engine.events.notifications import (
    OPERATOR_TOPIC,
    TASK_POOL_TOPIC,
    InMemoryNotifier,
    LoggingNotifier,
    NotificationFanout,
    Notifier,
    topics_for,
)
from unitpay_engine.events.types import (
    DomainEvent,
    EventCategory,
    EventMetadata,
    IntentCreated,
    IntentTransitioned,
    ReconciliationAnomaly,
)

__all__ = [
    "AsyncEventBatch",
    "AsyncEventEmitter",
    "DomainEvent",
    "EventCategory",
    "EventMetadata",
    "InMemoryNotifier",
    "IntentCreated",
    "IntentTransitioned",
    "LoggingNotifier",
    "NotificationFanout",
    "Notifier",
    "OPERATOR_TOPIC",
    "ReconciliationAnomaly",
    "TASK_POOL_TOPIC",
    "topics_for",
]
