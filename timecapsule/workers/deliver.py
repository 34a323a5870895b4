from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging

from timecapsule.domain.clock import Clock, utc_now
from timecapsule.domain.contracts import ItemStore, Notifier
from timecapsule.domain.dto import BuildEmailCommand
from timecapsule.domain.error_taxonomy import failure_reason, resolve_error_code
from timecapsule.domain.errors import DomainError, DomainValidationError, StoreUnavailableError
from timecapsule.domain.models import DeliveryItem, DeliveryOutcome, DeliveryReport, NotifierResult
from timecapsule.domain.use_cases.deliver import build_access_url, build_email, validate_item

COMPONENT_ID = "worker.deliver.process_item"
logger = logging.getLogger("runtime")


@dataclass
class DeliveryWorker:
    """Claims one due item, sends its access link and records the outcome.

    Per item, the claim completes before the Notifier is called and the
    outcome is written before `deliver` returns. A lost claim means another
    sweep owns the item and nothing is sent.
    """

    store: ItemStore
    notifier: Notifier
    app_base_url: str
    notifier_timeout_ms: int = 10000
    clock: Clock = field(default=utc_now)

    async def deliver(self, item: DeliveryItem, *, sweep_id: str | None = None) -> DeliveryReport:
        log_extra = {"item_id": item.item_id, "sweep_id": sweep_id}
        try:
            return await self._deliver(item, log_extra=log_extra)
        except Exception as exc:
            # The claim, if taken, is left to stale-claim expiry.
            logger.exception("delivery aborted by unexpected error", extra=log_extra)
            return DeliveryReport(
                item_id=item.item_id,
                outcome=DeliveryOutcome.SKIPPED,
                detail=str(exc) or type(exc).__name__,
            )

    async def _deliver(self, item: DeliveryItem, *, log_extra: dict[str, object]) -> DeliveryReport:
        try:
            validate_item(item)
        except DomainValidationError as exc:
            return await self._reject_invalid(item, reason=str(exc), log_extra=log_extra)

        try:
            claimed = await self.store.try_claim(item_id=item.item_id, now=self.clock())
        except StoreUnavailableError as exc:
            logger.warning("claim skipped: store unavailable", extra={**log_extra, "detail": str(exc)})
            return DeliveryReport(item_id=item.item_id, outcome=DeliveryOutcome.SKIPPED, detail=str(exc))
        if not claimed:
            logger.info("claim lost to a concurrent sweep", extra=log_extra)
            return DeliveryReport(item_id=item.item_id, outcome=DeliveryOutcome.SKIPPED, detail="claim lost")

        item = await self._reload(item, log_extra=log_extra)
        try:
            result = await self._send(item)
        except Exception as exc:
            logger.exception("delivery attempt raised", extra=log_extra)
            result = NotifierResult(
                delivered=False,
                reason=str(exc) or type(exc).__name__,
                error_code="internal_error",
            )
        return await self._record(item, result, log_extra=log_extra)

    async def _reload(self, item: DeliveryItem, *, log_extra: dict[str, object]) -> DeliveryItem:
        # Owner edits may land between listing and claiming; send what was claimed.
        try:
            current = await self.store.get_item(item_id=item.item_id)
        except StoreUnavailableError as exc:
            logger.warning("claimed item reload failed, using listed snapshot", extra={**log_extra, "detail": str(exc)})
            return item
        return current or item

    async def _send(self, item: DeliveryItem) -> NotifierResult:
        access_url = build_access_url(base_url=self.app_base_url, access_token=item.access_token)
        email = build_email(BuildEmailCommand(file_name=item.file_name, access_url=access_url))
        timeout_seconds = max(self.notifier_timeout_ms, 1) / 1000
        try:
            return await asyncio.wait_for(
                self.notifier.send(to=item.recipient_email, subject=email.subject, html_body=email.html_body),
                timeout=timeout_seconds,
            )
        except TimeoutError:
            return NotifierResult(
                delivered=False,
                reason=f"Email provider did not answer within {timeout_seconds:g}s",
                error_code="notifier_timeout",
            )

    async def _record(self, item: DeliveryItem, result: NotifierResult, *, log_extra: dict[str, object]) -> DeliveryReport:
        if result.delivered:
            outcome = DeliveryOutcome.SENT
            error_code = None
            detail = result.external_id or ""
        else:
            outcome = DeliveryOutcome.FAILED
            error_code = resolve_error_code(result.error_code or "notifier_rejected")
            detail = failure_reason(error_code, result.reason)

        # One immediate retry of the terminal write; the email already left.
        for attempt in (1, 2):
            try:
                if outcome == DeliveryOutcome.SENT:
                    await self.store.mark_sent(item_id=item.item_id, sent_at=self.clock(), email_id=result.external_id)
                else:
                    await self.store.mark_failed(
                        item_id=item.item_id,
                        reason=detail,
                        error_code=resolve_error_code(error_code),
                        now=self.clock(),
                    )
                break
            except StoreUnavailableError as exc:
                if attempt == 2:
                    logger.error(
                        "delivery outcome not recorded: store unavailable",
                        extra={**log_extra, "outcome": str(outcome), "detail": str(exc)},
                    )
                    return DeliveryReport(
                        item_id=item.item_id,
                        outcome=DeliveryOutcome.SKIPPED,
                        detail=f"outcome {outcome} not recorded: {exc}",
                    )
            except DomainError as exc:
                logger.error(
                    "delivery outcome rejected by store",
                    extra={**log_extra, "outcome": str(outcome), "detail": str(exc)},
                )
                return DeliveryReport(item_id=item.item_id, outcome=DeliveryOutcome.SKIPPED, detail=str(exc))

        if outcome == DeliveryOutcome.SENT:
            logger.info("delivery sent", extra={**log_extra, "email_id": result.external_id})
        else:
            logger.warning(
                "delivery failed",
                extra={**log_extra, "last_error_code": error_code, "detail": detail},
            )
        return DeliveryReport(item_id=item.item_id, outcome=outcome, detail=detail, error_code=error_code)

    async def _reject_invalid(self, item: DeliveryItem, *, reason: str, log_extra: dict[str, object]) -> DeliveryReport:
        try:
            failed = await self.store.fail_pending(
                item_id=item.item_id,
                reason=reason,
                error_code="validation_error",
                now=self.clock(),
            )
        except StoreUnavailableError as exc:
            logger.warning("validation failure not recorded: store unavailable", extra={**log_extra, "detail": str(exc)})
            return DeliveryReport(item_id=item.item_id, outcome=DeliveryOutcome.SKIPPED, detail=str(exc))
        if not failed:
            return DeliveryReport(item_id=item.item_id, outcome=DeliveryOutcome.SKIPPED, detail="claim lost")
        logger.warning("delivery item failed validation", extra={**log_extra, "last_error_code": "validation_error", "detail": reason})
        return DeliveryReport(
            item_id=item.item_id,
            outcome=DeliveryOutcome.FAILED,
            detail=reason,
            error_code="validation_error",
        )
