"""Notification fan-out.

Routes committed domain events to topics: the user's wallet, the LP's
wallet (current and previous assignment), and the ``task_pool`` broadcast
channel when pool membership or claimability changed. Delivery is
best-effort; a failing notifier is logged and never reaches the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from unitpay_engine.events.emitter import AsyncEventEmitter
from unitpay_engine.events.types import (
    DomainEvent,
    IntentCreated,
    IntentTransitioned,
    ReconciliationAnomaly,
)

logger = logging.getLogger(__name__)

TASK_POOL_TOPIC = "task_pool"
OPERATOR_TOPIC = "operators"


class Notifier(Protocol):
    """External publish operation."""

    async def notify(self, topic: str, event: dict[str, Any]) -> None:
        """Publish ``event`` on ``topic``. May raise; callers isolate failures."""
        ...


@dataclass
class InMemoryNotifier:
    """Records deliveries. Used by tests and single-process deployments."""

    deliveries: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    async def notify(self, topic: str, event: dict[str, Any]) -> None:
        self.deliveries.append((topic, event))

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.deliveries]

    def for_topic(self, topic: str) -> list[dict[str, Any]]:
        return [event for t, event in self.deliveries if t == topic]


class LoggingNotifier:
    """Writes every delivery to the log."""

    async def notify(self, topic: str, event: dict[str, Any]) -> None:
        logger.info("notify topic=%s event=%s intent=%s", topic, event.get("event_type"), event.get("intent_id"))


def topics_for(event: DomainEvent) -> list[str]:
    """Topics an event is delivered to, de-duplicated, in a stable order."""
    topics: list[str] = []

    def add(topic: str | None) -> None:
        if topic and topic not in topics:
            topics.append(topic)

    if isinstance(event, IntentCreated):
        add(event.user_wallet)
        add(TASK_POOL_TOPIC)
    elif isinstance(event, IntentTransitioned):
        add(event.user_wallet)
        add(event.lp_wallet)
        add(event.previous_lp)
        if event.pool_changed:
            add(TASK_POOL_TOPIC)
    elif isinstance(event, ReconciliationAnomaly):
        add(event.user_wallet)
        add(OPERATOR_TOPIC)
    return topics


class NotificationFanout:
    """Subscribes to an emitter and publishes through a Notifier."""

    def __init__(self, notifier: Notifier) -> None:
        self.notifier = notifier

    def attach(self, emitter: AsyncEventEmitter) -> None:
        emitter.on([IntentCreated, IntentTransitioned, ReconciliationAnomaly], self.handle)

    async def handle(self, event: DomainEvent) -> None:
        payload = event.to_dict()
        for topic in topics_for(event):
            try:
                await self.notifier.notify(topic, payload)
            except Exception:
                logger.exception("Notification to %s failed for %s", topic, event.event_type)
