"""
Event bus for job state transitions.

Replaces per-worker callback registration with one explicit bus per engine.
"""

import inspect
import itertools
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field

from jobqueue.types.events import JobEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[JobEvent], Awaitable[None] | None]


@dataclass(frozen=True)
class Subscription:
    """Handle returned by EventBus.subscribe."""

    id: int
    handler: EventHandler = field(compare=False)
    event_types: frozenset[str] | None = field(default=None, compare=False)

    def accepts(self, event: JobEvent) -> bool:
        return self.event_types is None or event.event_type in self.event_types


class EventBus:
    """
    Publishes job events to subscribers.

    Delivery guarantees:
    - events are delivered one at a time in publish order, so events for
      one job reach each handler in the order its transitions happened
    - handlers run in subscription order
    - a handler may publish (for example by enqueuing a follow-up job);
      the nested event is queued and delivered once the current event has
      reached every handler
    - a handler that raises is logged and skipped; the publisher and the
      other handlers are unaffected

    Whichever publisher finds the bus idle delivers the backlog, including
    events published meanwhile by other tasks.
    """

    def __init__(self):
        self._subscriptions: list[Subscription] = []
        self._ids = itertools.count(1)
        self._pending: deque[JobEvent] = deque()
        self._delivering = False

    def subscribe(
        self,
        handler: EventHandler,
        event_types: Iterable[str] | None = None,
    ) -> Subscription:
        """
        Register a handler.

        Args:
            handler: Sync or async callable taking a JobEvent.
            event_types: Only deliver these event types. All if None.

        Returns:
            Subscription to pass to unsubscribe.
        """
        subscription = Subscription(
            id=next(self._ids),
            handler=handler,
            event_types=frozenset(event_types) if event_types is not None else None,
        )
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Remove a subscription. Returns False if it was not registered."""
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            return False
        return True

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event: JobEvent) -> None:
        """Queue an event and deliver the backlog unless a delivery is running."""
        self._pending.append(event)
        if self._delivering:
            return

        self._delivering = True
        try:
            while self._pending:
                await self._deliver(self._pending.popleft())
        finally:
            self._delivering = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def _deliver(self, event: JobEvent) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.accepts(event):
                continue
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Event handler raised",
                    extra={
                        "event_type": event.event_type,
                        "job_id": str(event.job_id),
                        "subscription_id": subscription.id,
                    },
                )
