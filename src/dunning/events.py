"""
Dunning event bus.

Handlers are registered explicitly, optionally filtered by event type, and
invoked in registration order. A failing handler is logged and never stops
delivery to the remaining handlers.
"""

import inspect
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeVar

import structlog

from dunning.models import DunningEvent, DunningEventType, utc_now

logger = structlog.get_logger(__name__)

T = TypeVar("T")

EventHandler = Callable[[DunningEvent], Awaitable[None] | None]


async def maybe_await(value: T | Awaitable[T]) -> T:
    """Await ``value`` if it is awaitable, so callbacks may be sync or async."""
    if inspect.isawaitable(value):
        return await value
    return value  # type: ignore[return-value]


@dataclass(frozen=True)
class _Subscription:
    handler: EventHandler
    event_types: frozenset[DunningEventType] | None

    def matches(self, event: DunningEvent) -> bool:
        return self.event_types is None or event.type in self.event_types


class DunningEventBus:
    """In-process observer registry for dunning lifecycle events."""

    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []

    def subscribe(
        self,
        handler: EventHandler,
        event_types: Iterable[DunningEventType] | None = None,
    ) -> EventHandler:
        """
        Register a handler.

        Args:
            handler: Sync or async callable receiving the event
            event_types: Only deliver these event types (all when None)

        Returns:
            The handler, so the method can be used as a decorator
        """
        types = frozenset(event_types) if event_types is not None else None
        self._subscriptions.append(_Subscription(handler=handler, event_types=types))
        logger.debug(
            "dunning.event_handler.subscribed",
            handler=getattr(handler, "__name__", repr(handler)),
            event_types=sorted(t.value for t in types) if types else "*",
        )
        return handler

    def unsubscribe(self, handler: EventHandler) -> bool:
        """Remove every registration of ``handler``. Returns True if any was removed."""
        before = len(self._subscriptions)
        self._subscriptions = [s for s in self._subscriptions if s.handler is not handler]
        return len(self._subscriptions) != before

    @property
    def handler_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event: DunningEvent) -> None:
        """Deliver ``event`` to every matching handler, in registration order."""
        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            try:
                await maybe_await(subscription.handler(event))
            except Exception:
                logger.exception(
                    "dunning.event_handler.failed",
                    event_type=event.type.value,
                    dunning_id=event.dunning_state_id,
                    customer_id=event.customer_id,
                    handler=getattr(subscription.handler, "__name__", repr(subscription.handler)),
                )

    async def emit(
        self,
        event_type: DunningEventType,
        *,
        customer_id: str,
        subscription_id: str,
        dunning_state_id: str,
        timestamp: datetime | None = None,
        **data: Any,
    ) -> DunningEvent:
        """Build and publish an event."""
        event = DunningEvent(
            type=event_type,
            customer_id=customer_id,
            subscription_id=subscription_id,
            dunning_state_id=dunning_state_id,
            timestamp=timestamp or utc_now(),
            data=data,
        )
        await self.publish(event)
        return event
