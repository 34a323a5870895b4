from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import importlib
import json
import logging
from typing import Any

from timecapsule.domain.errors import StoreUnavailableError
from timecapsule.domain.models import ITEMS_TOPIC, SWEEPS_TOPIC, ItemEvent, ItemEventKind
from timecapsule.realtime.hub import DEFAULT_QUEUE_SIZE, QueueSubscription
from timecapsule.repositories.postgres import PostgresItemStore

try:
    asyncpg_module = importlib.import_module("asyncpg")
except ModuleNotFoundError:  # pragma: no cover
    asyncpg_module = None  # type: ignore[assignment]

logger = logging.getLogger("runtime")

# Topic -> LISTEN channel. delivery_item_changes is fed by the table trigger.
TOPIC_CHANNELS: dict[str, str] = {
    ITEMS_TOPIC: "delivery_item_changes",
    SWEEPS_TOPIC: "delivery_sweeps",
}


@dataclass
class PostgresChangeFeed:
    """LISTEN/NOTIFY channel with one dedicated connection per subscription.

    Publishing goes through the store's pool so that other processes
    listening on the same database observe sweep broadcasts too.
    """

    dsn: str
    store: PostgresItemStore
    max_queue_size: int = DEFAULT_QUEUE_SIZE

    async def subscribe(self, topic: str) -> QueueSubscription:
        channel = _channel_for(topic)
        if asyncpg_module is None:  # pragma: no cover
            raise RuntimeError("asyncpg is required for postgres change feed")
        try:
            conn = await asyncpg_module.connect(dsn=self.dsn)
        except (OSError, TimeoutError) as exc:
            raise StoreUnavailableError(f"cannot open listener connection: {exc}") from exc

        def _on_notification(connection: Any, pid: int, channel_name: str, payload: str) -> None:
            del connection, pid, channel_name
            event = decode_notification(topic=topic, payload=payload)
            if event is not None:
                subscription.deliver(event)

        async def _close(_: QueueSubscription) -> None:
            try:
                await conn.remove_listener(channel, _on_notification)
            finally:
                await conn.close()

        subscription = QueueSubscription(topic, on_close=_close, max_queue_size=self.max_queue_size)
        await conn.add_listener(channel, _on_notification)
        return subscription

    async def publish(self, event: ItemEvent) -> None:
        await self.store.notify(channel=_channel_for(event.topic), payload=event.to_json())


def _channel_for(topic: str) -> str:
    channel = TOPIC_CHANNELS.get(topic)
    if channel is None:
        raise ValueError(f"unknown realtime topic: {topic}")
    return channel


def decode_notification(*, topic: str, payload: str) -> ItemEvent | None:
    try:
        data = json.loads(payload)
        kind = ItemEventKind(data["kind"])
    except (ValueError, KeyError, TypeError):
        logger.warning("dropping malformed notification", extra={"topic": topic})
        return None

    scheduled_at = _parse_timestamp(data.get("scheduled_at"))
    extra = data.get("payload")
    payload_json = dict(extra) if isinstance(extra, dict) else {}
    if isinstance(data.get("file_name"), str):
        payload_json.setdefault("file_name", data["file_name"])
    return ItemEvent(
        topic=data.get("topic") or topic,
        kind=kind,
        item_id=data.get("item_id"),
        owner_id=data.get("owner_id"),
        old_status=data.get("old_status"),
        new_status=data.get("new_status"),
        scheduled_at=scheduled_at,
        payload=payload_json,
    )


def _parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
