from __future__ import annotations

import logging

from timecapsule.api.handlers.deps import ApiDeps
from timecapsule.api.schemas import DeliveryItemResponse, ListItemsResponse
from timecapsule.domain.dto import ScheduleUploadCommand, UpdateScheduleCommand
from timecapsule.domain.errors import DomainValidationError, ItemNotFoundError
from timecapsule.domain.models import DeliveryItem, DeliveryStatus, NewDeliveryItem
from timecapsule.domain.use_cases.deliver import build_access_url, validate_recipient
from timecapsule.domain.use_cases.schedule import normalize_file_name, storage_key_for_upload, to_utc

COMPONENT_ID = "api.items"
DEFAULT_FILE_TYPE = "application/octet-stream"
logger = logging.getLogger("runtime")


def item_response(item: DeliveryItem, *, app_base_url: str) -> DeliveryItemResponse:
    return DeliveryItemResponse(
        item_id=item.item_id,
        file_name=item.file_name,
        file_size=item.file_size,
        file_type=item.file_type,
        recipient_email=item.recipient_email,
        scheduled_at=item.scheduled_at,
        status=item.status,
        created_at=item.created_at,
        updated_at=item.updated_at,
        access_url=build_access_url(base_url=app_base_url, access_token=item.access_token),
        error_code=item.error_code,
        error_message=item.error_message,
        sent_at=item.sent_at,
        accessed_at=item.accessed_at,
    )


async def create_item_handler(*, cmd: ScheduleUploadCommand, api_deps: ApiDeps) -> DeliveryItemResponse:
    """Stores the upload bytes, then records a pending item pointing at them."""
    recipient_email = validate_recipient(cmd.recipient_email)
    file_name = normalize_file_name(cmd.file_name)
    if not cmd.payload:
        raise DomainValidationError("Uploaded file is empty")

    now = api_deps.clock()
    key = storage_key_for_upload(owner_id=cmd.owner_id, file_name=file_name, now=now)
    api_deps.storage.put_bytes(key=key, payload=cmd.payload)
    try:
        item = await api_deps.store.create_item(
            item=NewDeliveryItem(
                owner_id=cmd.owner_id,
                storage_path=key,
                file_name=file_name,
                file_size=len(cmd.payload),
                file_type=cmd.file_type or DEFAULT_FILE_TYPE,
                recipient_email=recipient_email,
                scheduled_at=to_utc(cmd.scheduled_at),
            ),
            now=now,
        )
    except Exception:
        _discard_payload(api_deps, key)
        raise

    logger.info("delivery item scheduled", extra={"item_id": item.item_id})
    return item_response(item, app_base_url=api_deps.app_base_url)


async def list_items_handler(
    *,
    owner_id: str,
    status: DeliveryStatus | None,
    api_deps: ApiDeps,
) -> ListItemsResponse:
    statuses = (status,) if status is not None else None
    items = await api_deps.store.list_for_owner(owner_id=owner_id, statuses=statuses)
    return ListItemsResponse(items=[item_response(item, app_base_url=api_deps.app_base_url) for item in items])


async def get_item_handler(*, item_id: str, owner_id: str, api_deps: ApiDeps) -> DeliveryItemResponse:
    item = await api_deps.store.get_item(item_id=item_id)
    if item is None or item.owner_id != owner_id:
        raise ItemNotFoundError(f"delivery item not found: {item_id}")
    return item_response(item, app_base_url=api_deps.app_base_url)


async def update_item_handler(*, cmd: UpdateScheduleCommand, api_deps: ApiDeps) -> DeliveryItemResponse:
    recipient_email = validate_recipient(cmd.recipient_email) if cmd.recipient_email is not None else None
    scheduled_at = to_utc(cmd.scheduled_at) if cmd.scheduled_at is not None else None
    item = await api_deps.store.update_pending(
        item_id=cmd.item_id,
        owner_id=cmd.owner_id,
        recipient_email=recipient_email,
        scheduled_at=scheduled_at,
        now=api_deps.clock(),
    )
    logger.info("delivery item rescheduled", extra={"item_id": item.item_id})
    return item_response(item, app_base_url=api_deps.app_base_url)


async def delete_item_handler(*, item_id: str, owner_id: str, api_deps: ApiDeps) -> None:
    removed = await api_deps.store.remove(item_id=item_id, owner_id=owner_id)
    if removed is None:
        return
    _discard_payload(api_deps, removed.storage_path)
    logger.info("delivery item removed", extra={"item_id": item_id})


def _discard_payload(api_deps: ApiDeps, key: str) -> None:
    try:
        api_deps.storage.delete(key=key)
    except Exception as exc:
        # Orphaned bytes are harmless; the row is what drives delivery.
        logger.warning("payload cleanup failed", extra={"detail": f"{key}: {exc}"})
