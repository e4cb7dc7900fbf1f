"""
In-process publish/subscribe for collection changes, keyed by owner.

Each subscriber gets its own bounded queue. A subscriber that falls behind is
marked lagged and closed; it must reconnect, and every (re)connection starts
from a full snapshot, so no consumer relies on gapless delivery.

Single-process only: dashboards connected to another worker do not see events
published here.
"""
import asyncio
import itertools
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Set

from pullbox.config import get_settings
from pullbox.schemas.collection import CollectionResponse
from pullbox.schemas.events import CollectionEvent, CollectionEventType
from pullbox.utils.prometheus_metrics import (
    collection_event_subscribers,
    collection_events_published_total,
)

logger = logging.getLogger("pullbox.events")


class SubscriptionLagged(Exception):
    """The subscriber's queue overflowed; it must reconnect and re-snapshot."""


class Subscription:
    """One dashboard connection's view of the bus."""

    def __init__(self, owner_id: str, maxsize: int):
        self.owner_id = owner_id
        self.queue: "asyncio.Queue[CollectionEvent]" = asyncio.Queue(maxsize=maxsize)
        self.lagged = False

    def offer(self, event: CollectionEvent) -> bool:
        """Enqueue without blocking. Returns False (and marks lagged) on overflow."""
        if self.lagged:
            return False
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.lagged = True
            return False

    async def next_event(self, timeout: Optional[float] = None) -> Optional[CollectionEvent]:
        """
        Wait for the next event.

        Returns:
            The event, or None if ``timeout`` elapsed first (send a keepalive)

        Raises:
            SubscriptionLagged: if the queue overflowed
        """
        if self.lagged:
            raise SubscriptionLagged(self.owner_id)
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None


class CollectionEventBus:
    """Per-owner fan-out of typed collection events."""

    def __init__(self, queue_size: Optional[int] = None):
        self.queue_size = queue_size or get_settings().event_queue_size
        self._subscribers: Dict[str, Set[Subscription]] = defaultdict(set)
        self._sequence = itertools.count(1)

    def subscriber_count(self, owner_id: Optional[str] = None) -> int:
        if owner_id is not None:
            return len(self._subscribers.get(owner_id, ()))
        return sum(len(subs) for subs in self._subscribers.values())

    def publish(
        self,
        event_type: CollectionEventType,
        owner_id: str,
        collection_id: Optional[str] = None,
        collection: Optional[CollectionResponse] = None,
    ) -> CollectionEvent:
        """
        Deliver an event to every current subscriber of ``owner_id``.
        Never blocks; overflowing subscribers are dropped.
        """
        event = CollectionEvent(
            type=event_type,
            owner_id=owner_id,
            sequence=next(self._sequence),
            collection_id=collection_id or (collection.id if collection else None),
            collection=collection,
        )
        collection_events_published_total.labels(type=event_type.value).inc()

        for subscription in list(self._subscribers.get(owner_id, ())):
            if not subscription.offer(event):
                logger.warning(
                    "Event subscriber lagged",
                    extra={"event": "sync", "owner_id": owner_id, "sequence": event.sequence},
                )
                self._remove(subscription)
        return event

    def snapshot(self, owner_id: str, collections: List[CollectionResponse]) -> CollectionEvent:
        """Build the snapshot event that opens a stream (not broadcast)."""
        return CollectionEvent(
            type=CollectionEventType.SNAPSHOT,
            owner_id=owner_id,
            sequence=next(self._sequence),
            collections=collections,
        )

    @asynccontextmanager
    async def subscribe(self, owner_id: str) -> AsyncIterator[Subscription]:
        subscription = Subscription(owner_id, self.queue_size)
        self._subscribers[owner_id].add(subscription)
        collection_event_subscribers.inc()
        try:
            yield subscription
        finally:
            self._remove(subscription)
            collection_event_subscribers.dec()

    def _remove(self, subscription: Subscription) -> None:
        subs = self._subscribers.get(subscription.owner_id)
        if not subs:
            return
        subs.discard(subscription)
        if not subs:
            del self._subscribers[subscription.owner_id]


def format_sse(event: CollectionEvent) -> str:
    """Render an event as one Server-Sent Events message."""
    return (
        f"id: {event.sequence}\n"
        f"event: {event.type.value}\n"
        f"data: {event.model_dump_json()}\n\n"
    )


SSE_KEEPALIVE = ": keepalive\n\n"

_event_bus: Optional[CollectionEventBus] = None


def get_event_bus() -> CollectionEventBus:
    """Process-wide bus (FastAPI dependency)."""
    global _event_bus
    if _event_bus is None:
        _event_bus = CollectionEventBus()
    return _event_bus
