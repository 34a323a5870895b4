from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import time

from timecapsule.domain.contracts import STORAGE_PREFIX
from timecapsule.domain.models import NotifierResult

logger = logging.getLogger("runtime")


@dataclass(frozen=True)
class SentEmail:
    to: str
    subject: str
    html_body: str
    external_id: str


@dataclass
class StubNotifier:
    """Records sends in memory instead of talking to an email provider.

    `reject_recipients` and `reject_all` simulate provider rejections,
    `delay_seconds` simulates a slow provider.
    """

    sent: list[SentEmail] = field(default_factory=list)
    attempts: list[str] = field(default_factory=list)
    reject_recipients: set[str] = field(default_factory=set)
    reject_all: bool = False
    rejection_reason: str = "Recipient rejected by stub provider"
    delay_seconds: float = 0.0

    async def send(self, *, to: str, subject: str, html_body: str) -> NotifierResult:
        self.attempts.append(to)
        # Yield so concurrent sweeps interleave as they would on real I/O.
        await asyncio.sleep(self.delay_seconds)
        if self.reject_all or to in self.reject_recipients:
            return NotifierResult(
                delivered=False,
                reason=self.rejection_reason,
                error_code="notifier_rejected",
                status_code=422,
            )
        external_id = f"stub-{len(self.sent) + 1}"
        self.sent.append(SentEmail(to=to, subject=subject, html_body=html_body, external_id=external_id))
        logger.info("stub notifier accepted email", extra={"recipient": to, "email_id": external_id})
        return NotifierResult(delivered=True, external_id=external_id, status_code=200)


@dataclass
class StubPayloadStorage:
    objects: dict[str, bytes] = field(default_factory=dict)
    deleted: list[str] = field(default_factory=list)
    base_url: str = "stub://payloads"

    def put_bytes(self, *, key: str, payload: bytes) -> str:
        if not key.startswith(STORAGE_PREFIX):
            raise ValueError(f"storage key must start with {STORAGE_PREFIX}")
        self.objects[key] = payload
        return key

    def get_bytes(self, *, key: str) -> bytes:
        payload = self.objects.get(key)
        if payload is None:
            raise KeyError(f"storage key not found: {key}")
        return payload

    def delete(self, *, key: str) -> None:
        if key not in self.objects:
            raise KeyError(f"storage key not found: {key}")
        del self.objects[key]
        self.deleted.append(key)

    def signed_url(self, *, key: str, expires_in_seconds: int) -> str:
        if key not in self.objects:
            raise KeyError(f"storage key not found: {key}")
        expires_at = int(time.time()) + expires_in_seconds
        return f"{self.base_url}/{key}?expires={expires_at}"
