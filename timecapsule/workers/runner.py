from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from timecapsule.config import SweeperRuntimeSettings
from timecapsule.workers.sweep import SweepScheduler


@dataclass
class SweeperRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    busy_ticks_total: int = 0
    idle_ticks_total: int = 0
    items_processed_total: int = 0
    errors_total: int = 0


async def run_sweeper_until_stopped(
    *,
    scheduler: SweepScheduler,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: SweeperRuntimeSettings,
    logger: logging.Logger,
    state: SweeperRuntimeState | None = None,
) -> None:
    if state is not None:
        state.started = True

    logger.info(
        "sweeper loop started",
        extra={"role": role, "service": role, "run_id": run_id, "interval_ms": settings.interval_ms},
    )

    while not stop_event.is_set():
        delay_ms = settings.interval_ms
        try:
            result = await scheduler.sweep(trigger="timer")
            if state is not None:
                state.ticks_total += 1
                state.items_processed_total += result.processed_count
                if result.processed_count:
                    state.busy_ticks_total += 1
                else:
                    state.idle_ticks_total += 1
        except Exception:
            if state is not None:
                state.ticks_total += 1
                state.errors_total += 1
            delay_ms = settings.error_backoff_ms
            logger.exception(
                "sweeper tick error",
                extra={"role": role, "service": role, "run_id": run_id},
            )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000)
        except TimeoutError:
            continue

    logger.info(
        "sweeper loop stopped",
        extra={"role": role, "service": role, "run_id": run_id},
    )
    if state is not None:
        state.stopped = True
