from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest

from timecapsule.clients.stub import StubNotifier
from timecapsule.domain.models import ITEMS_TOPIC, SWEEPS_TOPIC, DeliveryStatus, ItemEvent, ItemEventKind
from timecapsule.realtime.hub import InMemoryEventHub
from timecapsule.realtime.postgres import decode_notification
from timecapsule.realtime.reactor import ChangeReactor
from timecapsule.repositories.stub import InMemoryItemStore
from tests.unit.delivery_seed import NOW, build_scheduler, fixed_clock, seed_item


async def _settle(predicate, *, attempts: int = 100) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)


@pytest.mark.unit
def test_each_subscriber_gets_its_own_subscription() -> None:
    async def _run() -> None:
        hub = InMemoryEventHub()
        first = await hub.subscribe(ITEMS_TOPIC)
        second = await hub.subscribe(ITEMS_TOPIC)
        event = ItemEvent(topic=ITEMS_TOPIC, kind=ItemEventKind.INSERT, item_id="dlv_1")

        await hub.publish(event)
        await first.unsubscribe()
        await hub.publish(ItemEvent(topic=ITEMS_TOPIC, kind=ItemEventKind.DELETE, item_id="dlv_1"))

        assert await first.get() == event
        assert await first.get() is None
        assert (await second.get()).kind == ItemEventKind.INSERT
        assert (await second.get()).kind == ItemEventKind.DELETE
        assert hub.subscriber_count(ITEMS_TOPIC) == 1

        await second.unsubscribe()
        assert hub.subscriber_count(ITEMS_TOPIC) == 0

    asyncio.run(_run())


@pytest.mark.unit
def test_topics_are_isolated() -> None:
    async def _run() -> None:
        hub = InMemoryEventHub()
        async with await hub.subscribe(SWEEPS_TOPIC) as sweeps:
            await hub.publish(ItemEvent(topic=ITEMS_TOPIC, kind=ItemEventKind.INSERT))
            await hub.publish(ItemEvent(topic=SWEEPS_TOPIC, kind=ItemEventKind.SWEEP_COMPLETED))

            received = await sweeps.get()

        assert received is not None and received.kind == ItemEventKind.SWEEP_COMPLETED

    asyncio.run(_run())


@pytest.mark.unit
def test_slow_subscriber_drops_oldest_events() -> None:
    async def _run() -> None:
        hub = InMemoryEventHub(max_queue_size=2)
        subscription = await hub.subscribe(ITEMS_TOPIC)
        for idx in range(3):
            await hub.publish(ItemEvent(topic=ITEMS_TOPIC, kind=ItemEventKind.UPDATE, item_id=f"dlv_{idx}"))

        assert subscription.dropped == 1
        assert (await subscription.get()).item_id == "dlv_1"
        assert (await subscription.get()).item_id == "dlv_2"

    asyncio.run(_run())


@pytest.mark.unit
def test_reactor_reacts_only_to_due_pending_changes() -> None:
    reactor = ChangeReactor(channel=InMemoryEventHub(), scheduler=None, clock=fixed_clock())  # type: ignore[arg-type]

    def _event(kind: ItemEventKind, status: str | None, offset: timedelta) -> ItemEvent:
        return ItemEvent(topic=ITEMS_TOPIC, kind=kind, new_status=status, scheduled_at=NOW + offset)

    assert reactor.should_react(_event(ItemEventKind.INSERT, "pending", timedelta(0))) is True
    assert reactor.should_react(_event(ItemEventKind.UPDATE, "pending", -timedelta(minutes=1))) is True
    assert reactor.should_react(_event(ItemEventKind.INSERT, "pending", timedelta(minutes=1))) is False
    assert reactor.should_react(_event(ItemEventKind.UPDATE, "processing", -timedelta(minutes=1))) is False
    assert reactor.should_react(_event(ItemEventKind.DELETE, None, -timedelta(minutes=1))) is False


@pytest.mark.unit
def test_reactor_sweeps_when_due_item_is_inserted() -> None:
    async def _run() -> None:
        hub = InMemoryEventHub()
        store = InMemoryItemStore(events=hub)
        notifier = StubNotifier()
        reactor = ChangeReactor(channel=hub, scheduler=build_scheduler(store, notifier, events=hub), clock=fixed_clock())
        await reactor.start()
        try:
            item = await seed_item(store, scheduled_at=NOW - timedelta(seconds=1))
            await seed_item(store, scheduled_at=NOW + timedelta(days=1))
            await _settle(lambda: store.items[item.item_id].status == DeliveryStatus.SENT)
        finally:
            await reactor.stop()

        assert store.items[item.item_id].status == DeliveryStatus.SENT
        assert reactor.reactions_total == 1
        assert len(notifier.sent) == 1
        assert hub.subscriber_count(ITEMS_TOPIC) == 0

    asyncio.run(_run())


@pytest.mark.unit
def test_postgres_notification_payload_is_decoded() -> None:
    payload = json.dumps(
        {
            "kind": "update",
            "item_id": "dlv_1",
            "owner_id": "owner-1",
            "old_status": "pending",
            "new_status": "processing",
            "scheduled_at": "2026-01-15T12:00:00+00:00",
            "file_name": "letter.pdf",
        }
    )

    event = decode_notification(topic=ITEMS_TOPIC, payload=payload)

    assert event is not None
    assert event.kind == ItemEventKind.UPDATE
    assert event.scheduled_at == NOW
    assert event.payload == {"file_name": "letter.pdf"}


@pytest.mark.unit
def test_malformed_notification_is_dropped() -> None:
    assert decode_notification(topic=ITEMS_TOPIC, payload="not json") is None
    assert decode_notification(topic=ITEMS_TOPIC, payload=json.dumps({"kind": "truncate"})) is None
