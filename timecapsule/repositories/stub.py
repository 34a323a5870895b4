from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime

from timecapsule.domain.contracts import EventChannel
from timecapsule.domain.error_taxonomy import ErrorCode
from timecapsule.domain.errors import DomainInvariantError, ItemNotEditableError, ItemNotFoundError
from timecapsule.domain.ids import new_access_token, new_item_id
from timecapsule.domain.lifecycle import EDITABLE_STATES, ensure_transition
from timecapsule.domain.models import (
    ITEMS_TOPIC,
    DeliveryItem,
    DeliveryStatus,
    ItemEvent,
    ItemEventKind,
    NewDeliveryItem,
)


@dataclass
class InMemoryItemStore:
    """Non-network item store with deterministic behavior for local mode.

    Every status-guarded write checks and mutates the row without awaiting in
    between, so under a single event loop it behaves as a compare-and-swap.
    """

    items: dict[str, DeliveryItem] = field(default_factory=dict)
    events: EventChannel | None = None
    claims: list[str] = field(default_factory=list)
    transitions: list[tuple[str, str, str]] = field(default_factory=list)

    async def create_item(self, *, item: NewDeliveryItem, now: datetime) -> DeliveryItem:
        tokens = {row.access_token for row in self.items.values()}
        access_token = new_access_token()
        while access_token in tokens:
            access_token = new_access_token()
        row = DeliveryItem(
            item_id=new_item_id(),
            owner_id=item.owner_id,
            storage_path=item.storage_path,
            file_name=item.file_name,
            file_size=item.file_size,
            file_type=item.file_type,
            recipient_email=item.recipient_email,
            scheduled_at=item.scheduled_at,
            access_token=access_token,
            status=DeliveryStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.items[row.item_id] = row
        await self._publish(ItemEventKind.INSERT, old=None, new=row)
        return row

    async def get_item(self, *, item_id: str) -> DeliveryItem | None:
        return self.items.get(item_id)

    async def get_by_access_token(self, *, access_token: str) -> DeliveryItem | None:
        for row in self.items.values():
            if row.access_token == access_token:
                return row
        return None

    async def list_for_owner(
        self,
        *,
        owner_id: str,
        statuses: tuple[DeliveryStatus, ...] | None = None,
    ) -> list[DeliveryItem]:
        rows = [
            row
            for row in self.items.values()
            if row.owner_id == owner_id and (statuses is None or row.status in statuses)
        ]
        rows.sort(key=lambda row: (row.created_at, row.item_id), reverse=True)
        return rows

    async def list_due(self, *, now: datetime, limit: int) -> list[DeliveryItem]:
        due = [row for row in self.items.values() if row.is_due(now)]
        due.sort(key=lambda row: (row.scheduled_at, row.item_id))
        return due[: max(limit, 0)]

    async def try_claim(self, *, item_id: str, now: datetime) -> bool:
        row = self.items.get(item_id)
        if row is None or not row.is_due(now):
            return False
        self._write(row, replace(row, status=DeliveryStatus.PROCESSING, updated_at=now))
        self.claims.append(item_id)
        await self._publish(ItemEventKind.UPDATE, old=row, new=self.items[item_id])
        return True

    async def fail_pending(self, *, item_id: str, reason: str, error_code: ErrorCode, now: datetime) -> bool:
        row = self.items.get(item_id)
        if row is None or row.status != DeliveryStatus.PENDING:
            return False
        self._write(
            row,
            replace(
                row,
                status=DeliveryStatus.FAILED,
                error_code=error_code,
                error_message=reason,
                updated_at=now,
            ),
        )
        await self._publish(ItemEventKind.UPDATE, old=row, new=self.items[item_id])
        return True

    async def mark_sent(self, *, item_id: str, sent_at: datetime, email_id: str | None) -> None:
        row = self._require(item_id)
        self._write(
            row,
            replace(
                row,
                status=DeliveryStatus.SENT,
                sent_at=sent_at,
                email_id=email_id,
                error_code=None,
                error_message=None,
                updated_at=sent_at,
            ),
        )
        await self._publish(ItemEventKind.UPDATE, old=row, new=self.items[item_id])

    async def mark_failed(self, *, item_id: str, reason: str, error_code: ErrorCode, now: datetime) -> None:
        row = self._require(item_id)
        self._write(
            row,
            replace(
                row,
                status=DeliveryStatus.FAILED,
                error_code=error_code,
                error_message=reason,
                updated_at=now,
            ),
        )
        await self._publish(ItemEventKind.UPDATE, old=row, new=self.items[item_id])

    async def expire_stale_claims(self, *, older_than: datetime, now: datetime) -> int:
        stale = [
            row
            for row in self.items.values()
            if row.status == DeliveryStatus.PROCESSING and row.updated_at < older_than
        ]
        for row in stale:
            await self.mark_failed(
                item_id=row.item_id,
                reason="Delivery outcome unknown: claim expired while processing",
                error_code="claim_expired",
                now=now,
            )
        return len(stale)

    async def update_pending(
        self,
        *,
        item_id: str,
        owner_id: str,
        recipient_email: str | None,
        scheduled_at: datetime | None,
        now: datetime,
    ) -> DeliveryItem:
        row = self.items.get(item_id)
        if row is None or row.owner_id != owner_id:
            raise ItemNotFoundError(f"delivery item not found: {item_id}")
        if row.status not in EDITABLE_STATES:
            raise ItemNotEditableError(f"delivery item is {row.status} and can no longer be edited")
        updated = replace(
            row,
            recipient_email=recipient_email if recipient_email is not None else row.recipient_email,
            scheduled_at=scheduled_at if scheduled_at is not None else row.scheduled_at,
            updated_at=now,
        )
        self.items[item_id] = updated
        await self._publish(ItemEventKind.UPDATE, old=row, new=updated)
        return updated

    async def remove(self, *, item_id: str, owner_id: str) -> DeliveryItem | None:
        row = self.items.get(item_id)
        if row is None or row.owner_id != owner_id:
            return None
        if row.status == DeliveryStatus.PROCESSING:
            raise ItemNotEditableError("delivery item is being processed and cannot be deleted")
        del self.items[item_id]
        await self._publish(ItemEventKind.DELETE, old=row, new=None)
        return row

    async def record_access(self, *, item_id: str, accessed_at: datetime) -> None:
        row = self.items.get(item_id)
        if row is None or row.accessed_at is not None:
            return
        self.items[item_id] = replace(row, accessed_at=accessed_at)

    def _require(self, item_id: str) -> DeliveryItem:
        row = self.items.get(item_id)
        if row is None:
            raise ItemNotFoundError(f"delivery item not found: {item_id}")
        return row

    def _write(self, old: DeliveryItem, new: DeliveryItem) -> None:
        if old.status != new.status:
            ensure_transition(old.status, new.status)
        if new.item_id != old.item_id or new.access_token != old.access_token:
            raise DomainInvariantError("item identity and access token are immutable")
        self.items[new.item_id] = new
        self.transitions.append((new.item_id, str(old.status), str(new.status)))

    async def _publish(self, kind: ItemEventKind, *, old: DeliveryItem | None, new: DeliveryItem | None) -> None:
        if self.events is None:
            return
        current = new or old
        if current is None:
            return
        await self.events.publish(
            ItemEvent(
                topic=ITEMS_TOPIC,
                kind=kind,
                item_id=current.item_id,
                owner_id=current.owner_id,
                old_status=str(old.status) if old is not None else None,
                new_status=str(new.status) if new is not None else None,
                scheduled_at=current.scheduled_at,
                payload={"file_name": current.file_name},
            )
        )

