"""Fan-out of update events to connected observers."""

import asyncio
import itertools
import logging
from typing import AsyncIterator, Dict, Optional

from pulsewatch.config import (
    OBSERVER_QUEUE_SIZE,
    STREAM_KEEPALIVE_SECONDS,
    STREAM_RETRY_MILLISECONDS,
)
from pulsewatch.errors import ObserverDeliveryFailure
from pulsewatch.models import Alert, Reading, SystemStatus, UpdateEvent

logger = logging.getLogger(__name__)

_observer_ids = itertools.count(1)


class Subscription:
    """One observer's bounded event queue. When full, the oldest pending event
    is dropped to make room."""

    def __init__(self, maxsize: int = OBSERVER_QUEUE_SIZE):
        self.id = f"observer-{next(_observer_ids)}"
        self.closed = False
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def deliver(self, event: UpdateEvent) -> None:
        if self.closed:
            raise ObserverDeliveryFailure(self.id)
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    async def get(self) -> UpdateEvent:
        return await self._queue.get()

    def get_nowait(self) -> UpdateEvent:
        return self._queue.get_nowait()

    def close(self) -> None:
        self.closed = True


class Broadcaster:
    """Registry of observers. Publishing never blocks: every event gets the
    next sequence number and is handed to each observer in that order."""

    def __init__(self, queue_size: int = OBSERVER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: Dict[str, Subscription] = {}
        self._sequence = 0

    @property
    def observer_count(self) -> int:
        return len(self._subscribers)

    @property
    def sequence(self) -> int:
        return self._sequence

    def subscribe(self) -> Subscription:
        subscription = Subscription(self.queue_size)
        self._subscribers[subscription.id] = subscription
        logger.info("Observer %s connected (%d total)", subscription.id, self.observer_count)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        if self._subscribers.pop(subscription.id, None) is not None:
            logger.info("Observer %s disconnected (%d total)", subscription.id, self.observer_count)

    def publish(
        self,
        system_status: Optional[SystemStatus] = None,
        reading: Optional[Reading] = None,
        alert: Optional[Alert] = None,
    ) -> UpdateEvent:
        self._sequence += 1
        event = UpdateEvent(
            sequence=self._sequence,
            latest_reading=reading,
            system_status=system_status,
            alert=alert,
        )
        for subscription in list(self._subscribers.values()):
            try:
                subscription.deliver(event)
            except ObserverDeliveryFailure as e:
                logger.warning("%s, dropping observer", e)
                self._subscribers.pop(subscription.id, None)
        return event


def encode_sse(event: UpdateEvent) -> str:
    """Render an event as a Server-Sent Events message."""
    data = event.model_dump_json(by_alias=True, exclude_none=True)
    return f"id: {event.sequence}\ndata: {data}\n\n"


async def event_stream(
    broadcaster: Broadcaster,
    keepalive: float = STREAM_KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    """SSE body for one observer, from the moment it connects."""
    subscription = broadcaster.subscribe()
    try:
        yield f"retry: {STREAM_RETRY_MILLISECONDS}\n\n"
        while True:
            try:
                event = await asyncio.wait_for(subscription.get(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield encode_sse(event)
    finally:
        broadcaster.unsubscribe(subscription)
