from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from timecapsule.domain.error_taxonomy import ErrorCode


# Canonical delivery item lifecycle states.
#
# IMPORTANT:
# - Keep this enum synchronized with timecapsule/domain/lifecycle.py
#   (ALLOWED_TRANSITIONS).
# - Keep this enum synchronized with the DB status CHECK constraint in
#   db/migrations/000001_bootstrap.up.sql.
class DeliveryStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True)
class DeliveryItem:
    item_id: str
    owner_id: str
    storage_path: str
    file_name: str
    file_size: int
    file_type: str
    recipient_email: str
    scheduled_at: datetime
    access_token: str
    status: DeliveryStatus
    created_at: datetime
    updated_at: datetime
    error_code: str | None = None
    error_message: str | None = None
    sent_at: datetime | None = None
    email_id: str | None = None
    accessed_at: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        return self.status == DeliveryStatus.PENDING and self.scheduled_at <= now


@dataclass(frozen=True)
class NewDeliveryItem:
    owner_id: str
    storage_path: str
    file_name: str
    file_size: int
    file_type: str
    recipient_email: str
    scheduled_at: datetime


@dataclass(frozen=True)
class NotifierResult:
    delivered: bool
    external_id: str | None = None
    reason: str = ""
    error_code: ErrorCode | None = None
    status_code: int | None = None


class DeliveryOutcome(StrEnum):
    SENT = "sent"
    FAILED = "failed"
    # Claim race lost or the store was unreachable: the item is not this
    # sweep's responsibility and stays where it was.
    SKIPPED = "skipped"


@dataclass(frozen=True)
class DeliveryReport:
    item_id: str
    outcome: DeliveryOutcome
    detail: str = ""
    error_code: ErrorCode | None = None


@dataclass(frozen=True)
class SweepResult:
    processed_count: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    passes: int = 0

    def merge(self, other: SweepResult) -> SweepResult:
        return SweepResult(
            processed_count=self.processed_count + other.processed_count,
            success_count=self.success_count + other.success_count,
            failed_count=self.failed_count + other.failed_count,
            skipped_count=self.skipped_count + other.skipped_count,
            passes=self.passes + other.passes,
        )

    @classmethod
    def from_reports(cls, reports: list[DeliveryReport]) -> SweepResult:
        success = sum(1 for report in reports if report.outcome == DeliveryOutcome.SENT)
        failed = sum(1 for report in reports if report.outcome == DeliveryOutcome.FAILED)
        skipped = sum(1 for report in reports if report.outcome == DeliveryOutcome.SKIPPED)
        return cls(
            processed_count=success + failed,
            success_count=success,
            failed_count=failed,
            skipped_count=skipped,
            passes=1,
        )


class ItemEventKind(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    SWEEP_COMPLETED = "sweep.completed"


ITEMS_TOPIC = "delivery_items"
SWEEPS_TOPIC = "sweeps"


@dataclass(frozen=True)
class ItemEvent:
    topic: str
    kind: ItemEventKind
    item_id: str | None = None
    owner_id: str | None = None
    old_status: str | None = None
    new_status: str | None = None
    scheduled_at: datetime | None = None
    payload: dict[str, object] | None = None

    def to_json(self) -> dict[str, object]:
        return {
            "topic": self.topic,
            "kind": str(self.kind),
            "item_id": self.item_id,
            "owner_id": self.owner_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "payload": dict(self.payload or {}),
        }
