"""Event emitter for publishing domain events.

The emitter provides:
- Handler registration with type or category filtering
- Error isolation (handler failures don't break other handlers)
- Transaction-scoped batches that publish only after a clean exit

Each batch owns its events, so concurrent operations sharing one emitter
never see or drop each other's events.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar, runtime_checkable

from unitpay_engine.events.types import DomainEvent, EventCategory

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=DomainEvent)


@runtime_checkable
class AsyncEventHandler(Protocol):
    """Protocol for asynchronous event handlers."""

    async def __call__(self, event: DomainEvent) -> None:
        """Handle a domain event asynchronously."""
        ...


@dataclass
class HandlerRegistration:
    """Registration of an event handler."""

    handler: AsyncEventHandler
    event_types: set[str] | None  # None = all events
    categories: set[EventCategory] | None  # None = all categories


class AsyncEventEmitter:
    """Asynchronous event emitter.

    Usage:
        emitter = AsyncEventEmitter()

        async def notify_lp(event: IntentTransitioned) -> None:
            ...

        emitter.on(IntentTransitioned, notify_lp)

        async with emitter.batch() as batch:
            async with session.begin():
                ...
                batch.add(event)
        # Events published here, after commit
    """

    def __init__(self) -> None:
        self._handlers: list[HandlerRegistration] = []

    def on(
        self,
        event_type: type[T] | list[type[T]],
        handler: AsyncEventHandler,
    ) -> None:
        """Register async handler for specific event type(s)."""
        if isinstance(event_type, list):
            types = {t.__name__ for t in event_type}
        else:
            types = {event_type.__name__}
        self._handlers.append(HandlerRegistration(handler=handler, event_types=types, categories=None))

    def on_category(
        self,
        category: EventCategory | list[EventCategory],
        handler: AsyncEventHandler,
    ) -> None:
        """Register async handler for event category(ies)."""
        cats = set(category) if isinstance(category, list) else {category}
        self._handlers.append(HandlerRegistration(handler=handler, event_types=None, categories=cats))

    def on_all(self, handler: AsyncEventHandler) -> None:
        """Register async handler for all events."""
        self._handlers.append(HandlerRegistration(handler=handler, event_types=None, categories=None))

    def off(self, handler: AsyncEventHandler) -> None:
        """Unregister a handler."""
        self._handlers = [reg for reg in self._handlers if reg.handler is not handler]

    async def emit(self, event: DomainEvent) -> list[Exception]:
        """Emit an event to all matching handlers immediately.

        Returns list of any exceptions raised by handlers.
        """
        errors: list[Exception] = []
        tasks: list[asyncio.Task[None]] = []

        for reg in self._handlers:
            if reg.event_types and event.event_type not in reg.event_types:
                continue
            if reg.categories and event.category not in reg.categories:
                continue
            tasks.append(asyncio.create_task(self._call_handler(reg.handler, event)))

        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    errors.append(result)
        return errors

    async def _call_handler(self, handler: AsyncEventHandler, event: DomainEvent) -> None:
        """Call handler with error logging."""
        try:
            await handler(event)
        except Exception:
            logger.exception("Async handler %s failed for event %s", handler, event.event_type)
            raise

    def batch(self) -> AsyncEventBatch:
        """Create a batch context for collecting events."""
        return AsyncEventBatch(self)


class AsyncEventBatch:
    """Async context manager that holds events until a clean exit."""

    def __init__(self, emitter: AsyncEventEmitter) -> None:
        self._emitter = emitter
        self._events: list[DomainEvent] = []
        self._errors: list[Exception] = []

    async def __aenter__(self) -> AsyncEventBatch:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        events, self._events = self._events, []
        if exc_type is not None:
            # Transaction failed - nothing happened, nothing to announce
            return
        for event in events:
            self._errors.extend(await self._emitter.emit(event))

    def add(self, event: DomainEvent) -> None:
        """Add event to batch."""
        self._events.append(event)

    @property
    def pending(self) -> list[DomainEvent]:
        """Events collected so far."""
        return list(self._events)

    @property
    def errors(self) -> list[Exception]:
        """Errors from handler execution (available after context exits)."""
        return self._errors
