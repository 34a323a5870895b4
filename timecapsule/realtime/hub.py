from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
import logging

from timecapsule.domain.models import ItemEvent

logger = logging.getLogger("runtime")

DEFAULT_QUEUE_SIZE = 256


class QueueSubscription:
    """One subscriber's view of a topic.

    Owned by the caller that subscribed; closing it releases whatever the
    channel allocated for it (queue slot, listener connection).
    """

    def __init__(
        self,
        topic: str,
        *,
        on_close: Callable[[QueueSubscription], Awaitable[None]] | None = None,
        max_queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.topic = topic
        self._queue: asyncio.Queue[ItemEvent | None] = asyncio.Queue(maxsize=max_queue_size)
        self._on_close = on_close
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: ItemEvent) -> None:
        if self._closed:
            return
        if self._queue.full():
            # Slow consumer: drop the oldest event rather than block publishers.
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    async def get(self) -> ItemEvent | None:
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def __aiter__(self) -> AsyncIterator[ItemEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ItemEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)
        if self._on_close is not None:
            await self._on_close(self)

    async def __aenter__(self) -> QueueSubscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.unsubscribe()


@dataclass
class InMemoryEventHub:
    """Single-process fan-out channel; each subscribe() returns a fresh subscription."""

    max_queue_size: int = DEFAULT_QUEUE_SIZE
    published: list[ItemEvent] = field(default_factory=list)
    _subscriptions: dict[str, list[QueueSubscription]] = field(default_factory=dict)

    async def subscribe(self, topic: str) -> QueueSubscription:
        subscription = QueueSubscription(topic, on_close=self._remove, max_queue_size=self.max_queue_size)
        self._subscriptions.setdefault(topic, []).append(subscription)
        return subscription

    async def publish(self, event: ItemEvent) -> None:
        self.published.append(event)
        for subscription in list(self._subscriptions.get(event.topic, [])):
            subscription.deliver(event)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, []))

    async def _remove(self, subscription: QueueSubscription) -> None:
        subscribers = self._subscriptions.get(subscription.topic, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._subscriptions.pop(subscription.topic, None)
