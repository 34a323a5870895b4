from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
import logging
import time

from timecapsule.config import SweepSettings
from timecapsule.domain.clock import Clock, utc_now
from timecapsule.domain.contracts import EventChannel, ItemStore
from timecapsule.domain.errors import SweepError
from timecapsule.domain.ids import new_sweep_id
from timecapsule.domain.models import (
    SWEEPS_TOPIC,
    DeliveryItem,
    DeliveryOutcome,
    DeliveryReport,
    ItemEvent,
    ItemEventKind,
    SweepResult,
)
from timecapsule.workers.deliver import DeliveryWorker

COMPONENT_ID = "worker.sweep.run"
logger = logging.getLogger("runtime")


@dataclass
class SweepScheduler:
    """Finds every due pending item and hands each one to the delivery worker.

    Every trigger (timer, manual request, change feed, socket) calls the
    same `sweep()`. Concurrent sweeps are safe because each item is claimed
    individually before anything is sent.
    """

    store: ItemStore
    worker: DeliveryWorker
    settings: SweepSettings = field(default_factory=SweepSettings)
    events: EventChannel | None = None
    clock: Clock = field(default=utc_now)

    async def sweep(self, *, trigger: str = "manual") -> SweepResult:
        sweep_id = new_sweep_id()
        started = time.monotonic()
        log_extra = {"sweep_id": sweep_id, "trigger": trigger}
        logger.info("sweep started", extra=log_extra)

        await self._expire_stale_claims(log_extra)

        ceiling = max(self.settings.max_items, 1)
        attempted, result = await self._run_pass(sweep_id=sweep_id, limit=ceiling, first=True)
        remaining = ceiling - attempted
        if self.settings.extra_pass and result.processed_count > 0 and remaining > 0:
            # Items that became due while the first pass was sending.
            _, extra = await self._run_pass(sweep_id=sweep_id, limit=remaining, first=False)
            result = result.merge(extra)

        logger.info(
            "sweep finished",
            extra={
                **log_extra,
                "processed_count": result.processed_count,
                "success_count": result.success_count,
                "failed_count": result.failed_count,
                "skipped_count": result.skipped_count,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        if result.processed_count > 0:
            await self._broadcast(result, sweep_id=sweep_id, trigger=trigger)
        return result

    async def _run_pass(self, *, sweep_id: str, limit: int, first: bool) -> tuple[int, SweepResult]:
        try:
            due = await self.store.list_due(now=self.clock(), limit=limit)
        except Exception as exc:
            if first:
                logger.error("sweep aborted: cannot list due items", extra={"sweep_id": sweep_id, "detail": str(exc)})
                raise SweepError(f"cannot list due items: {exc}") from exc
            logger.warning("extra sweep pass skipped", extra={"sweep_id": sweep_id, "detail": str(exc)})
            return 0, SweepResult()

        if not due:
            return 0, SweepResult()

        reports = await self._deliver_all(due, sweep_id=sweep_id)
        return len(due), SweepResult.from_reports(reports)

    async def _deliver_all(self, due: list[DeliveryItem], *, sweep_id: str) -> list[DeliveryReport]:
        semaphore = asyncio.Semaphore(max(self.settings.concurrency, 1))

        async def _bounded(item: DeliveryItem) -> DeliveryReport:
            async with semaphore:
                return await self.worker.deliver(item, sweep_id=sweep_id)

        outcomes = await asyncio.gather(*(_bounded(item) for item in due), return_exceptions=True)
        reports: list[DeliveryReport] = []
        for item, outcome in zip(due, outcomes):
            if isinstance(outcome, DeliveryReport):
                reports.append(outcome)
                continue
            if not isinstance(outcome, Exception):
                raise outcome
            logger.error(
                "delivery task raised",
                extra={"sweep_id": sweep_id, "item_id": item.item_id, "detail": str(outcome)},
                exc_info=outcome,
            )
            reports.append(DeliveryReport(item_id=item.item_id, outcome=DeliveryOutcome.SKIPPED, detail=str(outcome)))
        return reports

    async def _expire_stale_claims(self, log_extra: dict[str, object]) -> None:
        now = self.clock()
        older_than = now - timedelta(seconds=self.settings.claim_timeout_seconds)
        try:
            expired = await self.store.expire_stale_claims(older_than=older_than, now=now)
        except Exception as exc:
            logger.warning("stale claim expiry skipped", extra={**log_extra, "detail": str(exc)})
            return
        if expired:
            logger.warning("expired stale claims", extra={**log_extra, "expired_count": expired})

    async def _broadcast(self, result: SweepResult, *, sweep_id: str, trigger: str) -> None:
        if self.events is None:
            return
        event = ItemEvent(
            topic=SWEEPS_TOPIC,
            kind=ItemEventKind.SWEEP_COMPLETED,
            payload={
                "sweep_id": sweep_id,
                "trigger": trigger,
                "processed_count": result.processed_count,
                "success_count": result.success_count,
                "failed_count": result.failed_count,
                "skipped_count": result.skipped_count,
            },
        )
        try:
            await self.events.publish(event)
        except Exception as exc:
            logger.warning("sweep broadcast failed", extra={"sweep_id": sweep_id, "detail": str(exc)})
