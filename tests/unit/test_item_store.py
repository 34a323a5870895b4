from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from timecapsule.domain.errors import DomainInvariantError, ItemNotEditableError, ItemNotFoundError
from timecapsule.domain.models import ITEMS_TOPIC, DeliveryStatus, ItemEventKind
from timecapsule.realtime.hub import InMemoryEventHub
from timecapsule.repositories.stub import InMemoryItemStore
from tests.unit.delivery_seed import NOW, seed_item


@pytest.mark.unit
def test_due_boundary_includes_now_and_excludes_future() -> None:
    """Due means scheduled_at <= now: an item one microsecond before now is due, one after is not."""

    async def _run() -> None:
        store = InMemoryItemStore()
        at_now = await seed_item(store, scheduled_at=NOW)
        just_before = await seed_item(store, scheduled_at=NOW - timedelta(microseconds=1))
        just_after = await seed_item(store, scheduled_at=NOW + timedelta(microseconds=1))

        due = await store.list_due(now=NOW, limit=10)

        assert [row.item_id for row in due] == [just_before.item_id, at_now.item_id]
        assert just_after.item_id not in {row.item_id for row in due}

    asyncio.run(_run())


@pytest.mark.unit
def test_list_due_skips_non_pending_items() -> None:
    async def _run() -> None:
        store = InMemoryItemStore()
        claimed = await seed_item(store)
        await store.try_claim(item_id=claimed.item_id, now=NOW)
        pending = await seed_item(store)

        due = await store.list_due(now=NOW, limit=10)

        assert [row.item_id for row in due] == [pending.item_id]

    asyncio.run(_run())


@pytest.mark.unit
def test_claim_is_compare_and_swap() -> None:
    async def _run() -> None:
        store = InMemoryItemStore()
        item = await seed_item(store)

        outcomes = await asyncio.gather(*(store.try_claim(item_id=item.item_id, now=NOW) for _ in range(5)))

        assert outcomes.count(True) == 1
        assert store.claims == [item.item_id]
        assert await store.try_claim(item_id="dlv_missing", now=NOW) is False

    asyncio.run(_run())


@pytest.mark.unit
def test_terminal_writes_require_processing() -> None:
    async def _run() -> None:
        store = InMemoryItemStore()
        item = await seed_item(store)

        with pytest.raises(DomainInvariantError, match="pending -> sent"):
            await store.mark_sent(item_id=item.item_id, sent_at=NOW, email_id="x")

        await store.try_claim(item_id=item.item_id, now=NOW)
        await store.mark_sent(item_id=item.item_id, sent_at=NOW, email_id="x")

        with pytest.raises(DomainInvariantError, match="sent -> failed"):
            await store.mark_failed(item_id=item.item_id, reason="late", error_code="internal_error", now=NOW)

    asyncio.run(_run())


@pytest.mark.unit
def test_fail_pending_only_applies_to_pending_items() -> None:
    async def _run() -> None:
        store = InMemoryItemStore()
        item = await seed_item(store)
        await store.try_claim(item_id=item.item_id, now=NOW)

        failed = await store.fail_pending(item_id=item.item_id, reason="bad", error_code="validation_error", now=NOW)

        assert failed is False
        assert store.items[item.item_id].status == DeliveryStatus.PROCESSING

    asyncio.run(_run())


@pytest.mark.unit
def test_access_tokens_are_unique_and_immutable() -> None:
    async def _run() -> None:
        store = InMemoryItemStore()
        items = [await seed_item(store) for _ in range(20)]

        assert len({item.access_token for item in items}) == 20
        with pytest.raises(DomainInvariantError, match="immutable"):
            store._write(items[0], replace(items[0], access_token="forged"))

    asyncio.run(_run())


@pytest.mark.unit
def test_owner_can_edit_only_pending_items() -> None:
    async def _run() -> None:
        store = InMemoryItemStore()
        item = await seed_item(store)
        later = NOW + timedelta(days=3)

        updated = await store.update_pending(
            item_id=item.item_id,
            owner_id="owner-1",
            recipient_email=None,
            scheduled_at=later,
            now=NOW,
        )
        assert updated.scheduled_at == later
        assert updated.recipient_email == item.recipient_email
        assert updated.access_token == item.access_token

        with pytest.raises(ItemNotFoundError):
            await store.update_pending(
                item_id=item.item_id,
                owner_id="someone-else",
                recipient_email="x@example.com",
                scheduled_at=None,
                now=NOW,
            )

        await store.try_claim(item_id=item.item_id, now=NOW)
        with pytest.raises(ItemNotEditableError):
            await store.update_pending(
                item_id=item.item_id,
                owner_id="owner-1",
                recipient_email="x@example.com",
                scheduled_at=None,
                now=NOW,
            )

    asyncio.run(_run())


@pytest.mark.unit
def test_remove_refuses_items_in_flight() -> None:
    async def _run() -> None:
        store = InMemoryItemStore()
        pending = await seed_item(store)
        in_flight = await seed_item(store)
        await store.try_claim(item_id=in_flight.item_id, now=NOW)

        removed = await store.remove(item_id=pending.item_id, owner_id="owner-1")
        assert removed is not None and removed.item_id == pending.item_id
        assert await store.remove(item_id=pending.item_id, owner_id="owner-1") is None

        with pytest.raises(ItemNotEditableError):
            await store.remove(item_id=in_flight.item_id, owner_id="owner-1")

    asyncio.run(_run())


@pytest.mark.unit
def test_stale_claims_expire_to_failed_and_fresh_claims_stay() -> None:
    async def _run() -> None:
        store = InMemoryItemStore()
        stale = await seed_item(store, scheduled_at=NOW - timedelta(hours=2))
        fresh = await seed_item(store)
        await store.try_claim(item_id=stale.item_id, now=NOW - timedelta(hours=1))
        await store.try_claim(item_id=fresh.item_id, now=NOW)

        expired = await store.expire_stale_claims(older_than=NOW - timedelta(minutes=15), now=NOW)

        assert expired == 1
        assert store.items[stale.item_id].status == DeliveryStatus.FAILED
        assert store.items[stale.item_id].error_code == "claim_expired"
        assert store.items[fresh.item_id].status == DeliveryStatus.PROCESSING

    asyncio.run(_run())


@pytest.mark.unit
def test_record_access_keeps_first_open_and_status() -> None:
    async def _run() -> None:
        store = InMemoryItemStore()
        item = await seed_item(store)
        await store.try_claim(item_id=item.item_id, now=NOW)
        await store.mark_sent(item_id=item.item_id, sent_at=NOW, email_id="x")

        await store.record_access(item_id=item.item_id, accessed_at=NOW + timedelta(hours=1))
        await store.record_access(item_id=item.item_id, accessed_at=NOW + timedelta(hours=2))

        row = store.items[item.item_id]
        assert row.accessed_at == NOW + timedelta(hours=1)
        assert row.status == DeliveryStatus.SENT

    asyncio.run(_run())


@pytest.mark.unit
def test_list_for_owner_filters_by_owner_and_status() -> None:
    async def _run() -> None:
        store = InMemoryItemStore()
        mine = await seed_item(store, owner_id="owner-1")
        await seed_item(store, owner_id="owner-2")
        claimed = await seed_item(store, owner_id="owner-1")
        await store.try_claim(item_id=claimed.item_id, now=NOW)

        everything = await store.list_for_owner(owner_id="owner-1")
        pending_only = await store.list_for_owner(owner_id="owner-1", statuses=(DeliveryStatus.PENDING,))

        assert {row.item_id for row in everything} == {mine.item_id, claimed.item_id}
        assert [row.item_id for row in pending_only] == [mine.item_id]

    asyncio.run(_run())


@pytest.mark.unit
def test_store_publishes_change_events() -> None:
    async def _run() -> None:
        hub = InMemoryEventHub()
        store = InMemoryItemStore(events=hub)
        item = await seed_item(store)
        await store.try_claim(item_id=item.item_id, now=NOW)

        kinds = [(event.kind, event.old_status, event.new_status) for event in hub.published]
        assert kinds == [
            (ItemEventKind.INSERT, None, "pending"),
            (ItemEventKind.UPDATE, "pending", "processing"),
        ]
        assert all(event.topic == ITEMS_TOPIC for event in hub.published)
        assert hub.published[0].payload == {"file_name": "letter.pdf"}

    asyncio.run(_run())


@pytest.mark.unit
def test_claim_requires_item_to_be_due() -> None:
    async def _run() -> None:
        store = InMemoryItemStore()
        item = await seed_item(store, scheduled_at=NOW + timedelta(microseconds=1))

        assert await store.try_claim(item_id=item.item_id, now=NOW) is False
        assert store.items[item.item_id].status == DeliveryStatus.PENDING
        assert await store.try_claim(item_id=item.item_id, now=NOW + timedelta(microseconds=1)) is True

    asyncio.run(_run())
