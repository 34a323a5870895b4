from __future__ import annotations

import logging

from timecapsule.api.handlers.deps import ApiDeps
from timecapsule.api.schemas import AccessResponse
from timecapsule.domain.dto import AccessGrant
from timecapsule.domain.errors import ItemNotFoundError, StoreUnavailableError
from timecapsule.domain.models import DeliveryStatus

COMPONENT_ID = "api.access.open_link"
logger = logging.getLogger("runtime")


async def open_access_link_handler(*, access_token: str, api_deps: ApiDeps) -> AccessResponse:
    """Resolves a recipient link to a short-lived download URL.

    Only sent items are reachable. Opening the link records the first
    access time and never changes the delivery status.
    """
    item = await api_deps.store.get_by_access_token(access_token=access_token)
    if item is None or item.status != DeliveryStatus.SENT:
        raise ItemNotFoundError("This link is invalid or the file is not available yet")

    try:
        file_url = api_deps.storage.signed_url(
            key=item.storage_path,
            expires_in_seconds=api_deps.access_link_ttl_seconds,
        )
    except KeyError as exc:
        raise ItemNotFoundError("The file is no longer available") from exc

    if item.accessed_at is None:
        try:
            await api_deps.store.record_access(item_id=item.item_id, accessed_at=api_deps.clock())
        except StoreUnavailableError as exc:
            logger.warning("access time not recorded", extra={"item_id": item.item_id, "detail": str(exc)})

    grant = AccessGrant(
        file_name=item.file_name,
        file_type=item.file_type,
        file_url=file_url,
        expires_in_seconds=api_deps.access_link_ttl_seconds,
    )
    return AccessResponse(
        file_name=grant.file_name,
        file_type=grant.file_type,
        file_url=grant.file_url,
        expires_in_seconds=grant.expires_in_seconds,
    )
