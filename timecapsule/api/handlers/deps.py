from __future__ import annotations

from dataclasses import dataclass, field

from timecapsule.domain.clock import Clock, utc_now
from timecapsule.domain.contracts import EventChannel, ItemStore, PayloadStorage
from timecapsule.workers.sweep import SweepScheduler


@dataclass(frozen=True)
class ApiDeps:
    store: ItemStore
    storage: PayloadStorage
    scheduler: SweepScheduler
    channel: EventChannel
    app_base_url: str
    access_link_ttl_seconds: int = 3600
    clock: Clock = field(default=utc_now)
