from __future__ import annotations

from timecapsule.api.handlers.deps import ApiDeps
from timecapsule.api.schemas import SweepResponse
from timecapsule.domain.models import SweepResult

COMPONENT_ID = "api.sweep.trigger"


def sweep_response(result: SweepResult) -> SweepResponse:
    return SweepResponse(
        processed_count=result.processed_count,
        success_count=result.success_count,
        failed_count=result.failed_count,
        skipped_count=result.skipped_count,
    )


async def run_sweep_handler(*, api_deps: ApiDeps, trigger: str = "manual") -> SweepResponse:
    result = await api_deps.scheduler.sweep(trigger=trigger)
    return sweep_response(result)
