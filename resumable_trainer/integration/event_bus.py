from __future__ import annotations

import logging
from collections import defaultdict
from typing import Callable, DefaultDict, Protocol, Type, TypeVar

from resumable_trainer.integration.events import DomainEvent


logger = logging.getLogger(__name__)

E = TypeVar("E", bound=DomainEvent)
Handler = Callable[[DomainEvent], None]
Unsubscribe = Callable[[], None]


class EventBus(Protocol):
    """Where training progress, checkpoint and promotion events go."""

    def publish(self, event: DomainEvent) -> None:
        ...

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> Unsubscribe:
        ...

    def latest(self, event_type: Type[E]) -> E | None:
        ...


class InMemoryEventBus:
    """Synchronous in-process pub/sub bus.

    Handlers stand in for UI listeners (charts, status lines), so a failing
    handler is logged and never interrupts training. The most recent event
    of each concrete type is kept for status queries.
    """

    def __init__(self) -> None:
        self._handlers: DefaultDict[Type[DomainEvent], list[Handler]] = defaultdict(list)
        self._latest: dict[Type[DomainEvent], DomainEvent] = {}

    def publish(self, event: DomainEvent) -> None:
        self._latest[type(event)] = event
        for event_type, handlers in list(self._handlers.items()):
            if not isinstance(event, event_type):
                continue
            for handler in list(handlers):
                try:
                    handler(event)
                except Exception:
                    logger.exception("Event handler %s failed for %s", handler, type(event).__name__)

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> Unsubscribe:
        handlers = self._handlers[event_type]
        handlers.append(handler)  # type: ignore[arg-type]

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)  # type: ignore[arg-type]

        return unsubscribe

    def latest(self, event_type: Type[E]) -> E | None:
        event = self._latest.get(event_type)
        return event  # type: ignore[return-value]
