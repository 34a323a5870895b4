from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from timecapsule.domain.models import DeliveryStatus


ITEM_ID_PATTERN = r"^dlv_[0-9A-HJKMNP-TV-Z]{26}$"
OWNER_ID_HEADER = "X-Owner-Id"


class ErrorResponse(BaseModel):
    detail: str


class SweeperMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    busy_ticks_total: int
    idle_ticks_total: int
    items_processed_total: int
    errors_total: int


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    sweeper_enabled: bool
    sweeper_ready: bool
    sweeper_metrics: SweeperMetrics
    realtime_enabled: bool
    realtime_ready: bool


class SweepResponse(BaseModel):
    """Sweep counters, serialized in camelCase for existing cron callers."""

    model_config = ConfigDict(populate_by_name=True)

    processed_count: int = Field(alias="processedCount")
    success_count: int = Field(alias="successCount")
    failed_count: int = Field(alias="failedCount")
    skipped_count: int = Field(alias="skippedCount")


class DeliveryItemResponse(BaseModel):
    item_id: str = Field(pattern=ITEM_ID_PATTERN)
    file_name: str
    file_size: int
    file_type: str
    recipient_email: str
    scheduled_at: datetime
    status: DeliveryStatus
    created_at: datetime
    updated_at: datetime
    access_url: str
    error_code: str | None = None
    error_message: str | None = None
    sent_at: datetime | None = None
    accessed_at: datetime | None = None


class ListItemsResponse(BaseModel):
    items: list[DeliveryItemResponse]


class UpdateItemRequest(BaseModel):
    recipient_email: str | None = Field(default=None, min_length=3, max_length=320)
    scheduled_at: datetime | None = None

    @model_validator(mode="after")
    def _require_change(self) -> UpdateItemRequest:
        if self.recipient_email is None and self.scheduled_at is None:
            raise ValueError("recipient_email or scheduled_at is required")
        return self


class AccessResponse(BaseModel):
    file_name: str
    file_type: str
    file_url: str
    expires_in_seconds: int
