from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class ScheduleUploadCommand:
    owner_id: str
    file_name: str
    file_type: str
    payload: bytes
    recipient_email: str
    scheduled_at: datetime


@dataclass(frozen=True)
class UpdateScheduleCommand:
    item_id: str
    owner_id: str
    recipient_email: str | None = None
    scheduled_at: datetime | None = None


@dataclass(frozen=True)
class BuildEmailCommand:
    file_name: str
    access_url: str


@dataclass(frozen=True)
class BuildEmailResult:
    subject: str
    html_body: str


@dataclass(frozen=True)
class AccessGrant:
    file_name: str
    file_type: str
    file_url: str
    expires_in_seconds: int
