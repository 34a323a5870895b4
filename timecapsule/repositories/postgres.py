from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
import importlib
import json
from typing import Any

from timecapsule.domain.error_taxonomy import ErrorCode
from timecapsule.domain.errors import (
    DomainInvariantError,
    ItemNotEditableError,
    ItemNotFoundError,
    StoreUnavailableError,
)
from timecapsule.domain.ids import new_access_token, new_item_id
from timecapsule.domain.models import DeliveryItem, DeliveryStatus, NewDeliveryItem
from timecapsule.repositories.sql_loader import load_sql

try:
    asyncpg_module = importlib.import_module("asyncpg")
except ModuleNotFoundError:  # pragma: no cover
    asyncpg_module = None  # type: ignore[assignment]


SQL_CREATE_ITEM = load_sql("create_item.sql")
SQL_GET_ITEM = load_sql("get_item.sql")
SQL_GET_BY_ACCESS_TOKEN = load_sql("get_by_access_token.sql")
SQL_LIST_FOR_OWNER = load_sql("list_for_owner.sql")
SQL_LIST_DUE = load_sql("list_due.sql")
SQL_TRY_CLAIM = load_sql("try_claim.sql")
SQL_FAIL_PENDING = load_sql("fail_pending.sql")
SQL_MARK_SENT = load_sql("mark_sent.sql")
SQL_MARK_FAILED = load_sql("mark_failed.sql")
SQL_EXPIRE_STALE_CLAIMS = load_sql("expire_stale_claims.sql")
SQL_UPDATE_PENDING = load_sql("update_pending.sql")
SQL_DELETE_ITEM = load_sql("delete_item.sql")
SQL_RECORD_ACCESS = load_sql("record_access.sql")
SQL_NOTIFY = load_sql("notify.sql")

# Connection exceptions, insufficient resources, operator intervention.
_TRANSIENT_SQLSTATE_PREFIXES = ("08", "53", "57P")
STALE_CLAIM_REASON = "Delivery outcome unknown: claim expired while processing"


def _is_unique_violation(exc: Exception) -> bool:
    return getattr(exc, "sqlstate", None) == "23505"


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (OSError, TimeoutError)):
        return True
    sqlstate = getattr(exc, "sqlstate", None) or ""
    if sqlstate.startswith(_TRANSIENT_SQLSTATE_PREFIXES):
        return True
    return asyncpg_module is not None and isinstance(exc, asyncpg_module.InterfaceError)


@dataclass
class AsyncpgPoolManager:
    dsn: str
    pool: Any | None = None
    min_size: int = 1
    max_size: int = 5

    async def startup(self) -> None:
        if asyncpg_module is None:  # pragma: no cover
            raise RuntimeError("asyncpg is required for postgres store mode")

        async def _init_connection(conn: Any) -> None:
            await conn.set_type_codec(
                "json",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )

        self.pool = await asyncpg_module.create_pool(
            dsn=self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            init=_init_connection,
        )

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None


@dataclass
class PostgresItemStore:
    pool_manager: AsyncpgPoolManager

    def _pool(self) -> Any:
        if self.pool_manager.pool is None:
            raise StoreUnavailableError("postgres pool is not initialized")
        return self.pool_manager.pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        pool = self._pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except Exception as exc:
            if _is_transient(exc):
                raise StoreUnavailableError(str(exc) or type(exc).__name__) from exc
            raise

    async def create_item(self, *, item: NewDeliveryItem, now: datetime) -> DeliveryItem:
        async with self._connection() as conn:
            for _ in range(5):
                try:
                    row = await conn.fetchrow(
                        SQL_CREATE_ITEM,
                        new_item_id(),
                        item.owner_id,
                        item.storage_path,
                        item.file_name,
                        item.file_size,
                        item.file_type,
                        item.recipient_email,
                        item.scheduled_at,
                        new_access_token(),
                        now,
                    )
                    if row is None:
                        raise DomainInvariantError("failed to create delivery item")
                    return _item_from_row(row)
                except Exception as exc:
                    if _is_unique_violation(exc):
                        continue
                    raise
        raise DomainInvariantError("failed to allocate unique delivery item id or access token")

    async def get_item(self, *, item_id: str) -> DeliveryItem | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_GET_ITEM, item_id)
        return _item_from_row(row) if row is not None else None

    async def get_by_access_token(self, *, access_token: str) -> DeliveryItem | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_GET_BY_ACCESS_TOKEN, access_token)
        return _item_from_row(row) if row is not None else None

    async def list_for_owner(
        self,
        *,
        owner_id: str,
        statuses: tuple[DeliveryStatus, ...] | None = None,
    ) -> list[DeliveryItem]:
        status_values = [str(status) for status in statuses] if statuses is not None else None
        async with self._connection() as conn:
            rows = await conn.fetch(SQL_LIST_FOR_OWNER, owner_id, status_values)
        return [_item_from_row(row) for row in rows]

    async def list_due(self, *, now: datetime, limit: int) -> list[DeliveryItem]:
        async with self._connection() as conn:
            rows = await conn.fetch(SQL_LIST_DUE, now, max(limit, 0))
        return [_item_from_row(row) for row in rows]

    async def try_claim(self, *, item_id: str, now: datetime) -> bool:
        async with self._connection() as conn:
            claimed = await conn.fetchval(SQL_TRY_CLAIM, item_id, now)
        return claimed is not None

    async def fail_pending(self, *, item_id: str, reason: str, error_code: ErrorCode, now: datetime) -> bool:
        async with self._connection() as conn:
            failed = await conn.fetchval(SQL_FAIL_PENDING, item_id, error_code, reason, now)
        return failed is not None

    async def mark_sent(self, *, item_id: str, sent_at: datetime, email_id: str | None) -> None:
        async with self._connection() as conn:
            updated = await conn.fetchval(SQL_MARK_SENT, item_id, sent_at, email_id)
        if updated is None:
            raise DomainInvariantError(f"mark_sent rejected: {item_id} is not processing")

    async def mark_failed(self, *, item_id: str, reason: str, error_code: ErrorCode, now: datetime) -> None:
        async with self._connection() as conn:
            updated = await conn.fetchval(SQL_MARK_FAILED, item_id, error_code, reason, now)
        if updated is None:
            raise DomainInvariantError(f"mark_failed rejected: {item_id} is not processing")

    async def expire_stale_claims(self, *, older_than: datetime, now: datetime) -> int:
        async with self._connection() as conn:
            rows = await conn.fetch(SQL_EXPIRE_STALE_CLAIMS, older_than, STALE_CLAIM_REASON, now)
        return len(rows)

    async def update_pending(
        self,
        *,
        item_id: str,
        owner_id: str,
        recipient_email: str | None,
        scheduled_at: datetime | None,
        now: datetime,
    ) -> DeliveryItem:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_UPDATE_PENDING, item_id, owner_id, recipient_email, scheduled_at, now)
            if row is not None:
                return _item_from_row(row)
            existing = await conn.fetchrow(SQL_GET_ITEM, item_id)
        if existing is None or existing["owner_id"] != owner_id:
            raise ItemNotFoundError(f"delivery item not found: {item_id}")
        raise ItemNotEditableError(f"delivery item is {existing['status']} and can no longer be edited")

    async def remove(self, *, item_id: str, owner_id: str) -> DeliveryItem | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_DELETE_ITEM, item_id, owner_id)
            if row is not None:
                return _item_from_row(row)
            existing = await conn.fetchrow(SQL_GET_ITEM, item_id)
        if existing is not None and existing["owner_id"] == owner_id:
            raise ItemNotEditableError("delivery item is being processed and cannot be deleted")
        return None

    async def record_access(self, *, item_id: str, accessed_at: datetime) -> None:
        async with self._connection() as conn:
            await conn.execute(SQL_RECORD_ACCESS, item_id, accessed_at)

    async def notify(self, *, channel: str, payload: dict[str, object]) -> None:
        async with self._connection() as conn:
            await conn.execute(SQL_NOTIFY, channel, json.dumps(payload))


def _item_from_row(row: Any) -> DeliveryItem:
    return DeliveryItem(
        item_id=row["public_id"],
        owner_id=row["owner_id"],
        storage_path=row["storage_path"],
        file_name=row["file_name"],
        file_size=int(row["file_size"]),
        file_type=row["file_type"],
        recipient_email=row["recipient_email"],
        scheduled_at=row["scheduled_at"],
        access_token=row["access_token"],
        status=DeliveryStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        error_code=row["error_code"],
        error_message=row["error_message"],
        sent_at=row["sent_at"],
        email_id=row["email_id"],
        accessed_at=row["accessed_at"],
    )
