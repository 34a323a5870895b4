from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC
import logging

from timecapsule.domain.clock import Clock, utc_now
from timecapsule.domain.contracts import EventChannel, Subscription
from timecapsule.domain.models import ITEMS_TOPIC, DeliveryStatus, ItemEvent, ItemEventKind
from timecapsule.workers.sweep import SweepScheduler

logger = logging.getLogger("runtime")


@dataclass
class ChangeReactor:
    """Runs a sweep whenever an item change leaves a pending item already due.

    Deletes, claims and terminal writes are ignored, so the reactor never
    reacts to the writes its own sweeps produce.
    """

    channel: EventChannel
    scheduler: SweepScheduler
    clock: Clock = field(default=utc_now)
    reactions_total: int = 0
    errors_total: int = 0
    _subscription: Subscription | None = field(default=None, init=False, repr=False)
    _task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def should_react(self, event: ItemEvent) -> bool:
        if event.kind not in (ItemEventKind.INSERT, ItemEventKind.UPDATE):
            return False
        if event.new_status != DeliveryStatus.PENDING or event.scheduled_at is None:
            return False
        scheduled_at = event.scheduled_at
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=UTC)
        return scheduled_at <= self.clock()

    async def start(self) -> None:
        if self.running:
            return
        self._subscription = await self.channel.subscribe(ITEMS_TOPIC)
        self._task = asyncio.create_task(self._consume(self._subscription))
        logger.info("change reactor started", extra={"topic": ITEMS_TOPIC})

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.unsubscribe()
            self._subscription = None
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("change reactor stopped", extra={"topic": ITEMS_TOPIC})

    async def _consume(self, subscription: Subscription) -> None:
        async for event in subscription:
            if not self.should_react(event):
                continue
            self.reactions_total += 1
            try:
                await self.scheduler.sweep(trigger="realtime")
            except Exception:
                self.errors_total += 1
                logger.exception("realtime sweep failed", extra={"item_id": event.item_id})
