"""In-process event bus.

The bus keeps a bounded buffer of recent events, runs synchronous hooks for
every event and fans events out to subscriber queues. Subscribers filter by
event type; the approval worker subscribes to ``approval.decided``.
"""

import asyncio
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import structlog

from fiscal_flow.events.types import DomainEvent, EventType

logger = structlog.get_logger(__name__)


@dataclass
class Subscription:
    """A queue receiving events of the subscribed types."""

    queue: asyncio.Queue[DomainEvent]
    event_types: set[EventType] = field(default_factory=set)
    name: str = ""

    def wants(self, event: DomainEvent) -> bool:
        return not self.event_types or event.event_type in self.event_types


class EventBus:
    """Publishes domain events to hooks and subscriber queues.

    Usage:
        bus = EventBus()
        sub = bus.subscribe([EventType.APPROVAL_DECIDED], name="worker")

        bus.publish(event)
        event = await sub.queue.get()
    """

    def __init__(self, buffer_size: int = 100):
        self._buffer: deque[DomainEvent] = deque(maxlen=buffer_size)
        self._subscriptions: list[Subscription] = []
        self._event_hooks: list[Callable[[DomainEvent], None]] = []
        self._logger = logger.bind(component="event_bus")

    @property
    def recent_events(self) -> list[DomainEvent]:
        """Get recently published events."""
        return list(self._buffer)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def add_event_hook(self, hook: Callable[[DomainEvent], None]) -> None:
        """Add a hook to be called for every event.

        Hooks are called synchronously before queue delivery.
        """
        self._event_hooks.append(hook)

    def remove_event_hook(self, hook: Callable[[DomainEvent], None]) -> None:
        if hook in self._event_hooks:
            self._event_hooks.remove(hook)

    def subscribe(
        self, event_types: Iterable[EventType] = (), name: str = ""
    ) -> Subscription:
        """Register a subscriber queue for the given event types (all when empty)."""
        subscription = Subscription(
            queue=asyncio.Queue(), event_types=set(event_types), name=name
        )
        self._subscriptions.append(subscription)
        self._logger.debug(
            "subscriber_added",
            name=name,
            event_types=[t.value for t in subscription.event_types],
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: DomainEvent) -> None:
        """Publish an event to hooks and subscribers."""
        self._buffer.append(event)

        for hook in self._event_hooks:
            try:
                hook(event)
            except Exception as e:
                self._logger.error("event_hook_error", error=str(e))

        delivered = 0
        for subscription in self._subscriptions:
            if subscription.wants(event):
                subscription.queue.put_nowait(event)
                delivered += 1

        self._logger.debug(
            "event_published",
            event_type=event.event_type.value,
            subscribers=delivered,
        )

    def get_events_by_type(self, event_type: EventType) -> list[DomainEvent]:
        """Get buffered events of a specific type."""
        return [e for e in self._buffer if e.event_type == event_type]
