from __future__ import annotations

from datetime import UTC, datetime
from pathlib import PurePosixPath

from timecapsule.domain.contracts import STORAGE_PREFIX
from timecapsule.domain.errors import DomainValidationError

COMPONENT_ID_SCHEDULE = "domain.schedule.normalize"

MAX_FILE_NAME_LENGTH = 255


def to_utc(value: datetime) -> datetime:
    # Naive timestamps from forms are interpreted as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def normalize_file_name(file_name: str | None) -> str:
    name = PurePosixPath((file_name or "").replace("\\", "/")).name.strip()
    if not name:
        raise DomainValidationError("File name is missing")
    return name[:MAX_FILE_NAME_LENGTH]


def storage_key_for_upload(*, owner_id: str, file_name: str, now: datetime) -> str:
    """Owner-scoped object key, `uploads/{owner}/{epoch_ms}.{ext}`."""
    suffix = PurePosixPath(file_name).suffix
    stamp = int(now.timestamp() * 1000)
    return f"{STORAGE_PREFIX}{owner_id}/{stamp}{suffix}"
