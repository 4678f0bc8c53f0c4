"""In-process publish/subscribe fan-out for state changes.

Delivery is at-least-once from the consumer's point of view: a consumer
that reconnects re-reads current state and then sees events again, so
consumers merge by key and never append blindly. Events published by one
publisher on one topic arrive in publish order; nothing is promised across
topics.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Self

from tracker.logging import get_logger
from tracker.models import Event

logger = get_logger(__name__)

BACKFILL_PROGRESS = "backfill_progress"
RECORD_SAVED = "record_saved"
RECORD_UPDATED = "record_updated"
IDENTIFIER_UPDATED = "identifier_updated"


def subject_topic(subject: str) -> str:
    """Topic carrying every event about one subject."""
    return f"subject:{subject.lower()}"


class Subscription:
    """A subscriber's queue on one topic.

    Usage:
        async with bus.subscribe(subject_topic("alice")) as sub:
            async for event in sub:
                ...
    """

    def __init__(self, bus: NotificationBus, topic: str, max_queue: int = 0) -> None:
        self._bus = bus
        self.topic = topic
        self._queue: asyncio.Queue[Event | None] = asyncio.Queue(maxsize=max_queue)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: Event) -> bool:
        """Queue an event. Returns False if the subscriber cannot keep up."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    async def get(self) -> Event:
        """Wait for the next event.

        Raises:
            StopAsyncIteration: If the subscription was closed.
        """
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus._remove(self)
        # wake a consumer blocked in get()
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> Event:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        return await self.get()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()


class NotificationBus:
    """Topic-based fan-out to any number of subscribers.

    Args:
        max_queue: Per-subscriber queue bound (0 = unbounded). A subscriber
            whose queue is full is dropped and must resubscribe.
    """

    def __init__(self, max_queue: int = 0) -> None:
        self._max_queue = max_queue
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)

    def subscribe(self, topic: str) -> Subscription:
        sub = Subscription(self, topic, self._max_queue)
        self._subscribers[topic].append(sub)
        logger.debug("bus_subscribed", topic=topic, total=len(self._subscribers[topic]))
        return sub

    def publish(self, topic: str, event: Event) -> int:
        """Deliver an event to every current subscriber of a topic.

        Returns the number of subscribers that received it.
        """
        delivered = 0
        for sub in list(self._subscribers.get(topic, ())):
            if sub.deliver(event):
                delivered += 1
            else:
                logger.warning("bus_subscriber_dropped", topic=topic, event_type=event.type)
                sub.close()
        return delivered

    def publish_subject(self, event_type: str, subject: str, data: dict) -> int:
        """Publish an event on a subject's topic."""
        subject = subject.lower()
        return self.publish(subject_topic(subject), Event(type=event_type, subject=subject, data=data))

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    def close(self) -> None:
        """Close every subscription, ending their iterators."""
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                sub.close()
        self._subscribers.clear()

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.topic)
        if subs and sub in subs:
            subs.remove(sub)
            if not subs:
                del self._subscribers[sub.topic]
