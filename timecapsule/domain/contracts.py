from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime
from typing import Protocol, runtime_checkable

from timecapsule.domain.error_taxonomy import ErrorCode
from timecapsule.domain.models import (
    DeliveryItem,
    DeliveryStatus,
    ItemEvent,
    NewDeliveryItem,
    NotifierResult,
)

CLAIM_SQL_CONTRACT = "UPDATE ... SET status = 'processing' WHERE id = $1 AND status = 'pending'"
STORAGE_PREFIX = "uploads/"


@runtime_checkable
class ItemStore(Protocol):
    """Persistence contract for delivery items.

    `try_claim` and `fail_pending` must be single conditional updates
    guarded on the current status (compare-and-swap), never a read followed
    by a write. They are the only synchronization primitive between sweeps.
    `try_claim` also requires the item to still be due at `now`.
    Any method may raise StoreUnavailableError on transient I/O failure.
    """

    async def create_item(self, *, item: NewDeliveryItem, now: datetime) -> DeliveryItem: ...

    async def get_item(self, *, item_id: str) -> DeliveryItem | None: ...

    async def get_by_access_token(self, *, access_token: str) -> DeliveryItem | None: ...

    async def list_for_owner(
        self,
        *,
        owner_id: str,
        statuses: tuple[DeliveryStatus, ...] | None = None,
    ) -> list[DeliveryItem]: ...

    async def list_due(self, *, now: datetime, limit: int) -> list[DeliveryItem]: ...

    async def try_claim(self, *, item_id: str, now: datetime) -> bool: ...

    async def fail_pending(self, *, item_id: str, reason: str, error_code: ErrorCode, now: datetime) -> bool: ...

    async def mark_sent(self, *, item_id: str, sent_at: datetime, email_id: str | None) -> None: ...

    async def mark_failed(self, *, item_id: str, reason: str, error_code: ErrorCode, now: datetime) -> None: ...

    async def expire_stale_claims(self, *, older_than: datetime, now: datetime) -> int: ...

    async def update_pending(
        self,
        *,
        item_id: str,
        owner_id: str,
        recipient_email: str | None,
        scheduled_at: datetime | None,
        now: datetime,
    ) -> DeliveryItem: ...

    async def remove(self, *, item_id: str, owner_id: str) -> DeliveryItem | None: ...

    async def record_access(self, *, item_id: str, accessed_at: datetime) -> None: ...


@runtime_checkable
class Notifier(Protocol):
    async def send(self, *, to: str, subject: str, html_body: str) -> NotifierResult: ...


@runtime_checkable
class PayloadStorage(Protocol):
    """Object storage for uploaded bytes, prefix-scoped keys."""

    def put_bytes(self, *, key: str, payload: bytes) -> str: ...

    def delete(self, *, key: str) -> None: ...

    def signed_url(self, *, key: str, expires_in_seconds: int) -> str: ...


@runtime_checkable
class Subscription(Protocol):
    topic: str

    def __aiter__(self) -> AsyncIterator[ItemEvent]: ...

    async def unsubscribe(self) -> None: ...


@runtime_checkable
class EventChannel(Protocol):
    """Connection-scoped realtime channel: every subscriber owns its subscription."""

    async def subscribe(self, topic: str) -> Subscription: ...

    async def publish(self, event: ItemEvent) -> None: ...
