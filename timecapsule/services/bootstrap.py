from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging

from timecapsule.api.handlers.deps import ApiDeps
from timecapsule.clients.resend import ResendNotifier
from timecapsule.clients.stub import StubNotifier, StubPayloadStorage
from timecapsule.config import AppSettings, app_settings_from_env
from timecapsule.domain.contracts import EventChannel, ItemStore, Notifier, PayloadStorage
from timecapsule.realtime.hub import InMemoryEventHub
from timecapsule.realtime.postgres import PostgresChangeFeed
from timecapsule.realtime.reactor import ChangeReactor
from timecapsule.repositories.postgres import AsyncpgPoolManager, PostgresItemStore
from timecapsule.repositories.stub import InMemoryItemStore
from timecapsule.roles import RuntimeRole
from timecapsule.workers.deliver import DeliveryWorker
from timecapsule.workers.sweep import SweepScheduler

logger = logging.getLogger("runtime")


@dataclass
class RuntimeContainer:
    settings: AppSettings
    mode: str
    store: ItemStore
    storage: PayloadStorage
    notifier: Notifier
    channel: EventChannel
    worker: DeliveryWorker
    scheduler: SweepScheduler
    reactor: ChangeReactor | None
    api_deps: ApiDeps
    timer_enabled: bool
    on_startup: Callable[[], Awaitable[None]] | None
    on_shutdown: Callable[[], Awaitable[None]] | None


def build_runtime_container(role: RuntimeRole, settings: AppSettings | None = None) -> RuntimeContainer:
    settings = settings or app_settings_from_env()
    on_startup: Callable[[], Awaitable[None]] | None = None
    on_shutdown: Callable[[], Awaitable[None]] | None = None
    store: ItemStore
    channel: EventChannel
    if settings.database_url:
        mode = "postgres"
        pool_manager = AsyncpgPoolManager(dsn=settings.database_url)
        store = PostgresItemStore(pool_manager=pool_manager)
        channel = PostgresChangeFeed(dsn=settings.database_url, store=store)
        on_startup = pool_manager.startup
        on_shutdown = pool_manager.shutdown
    else:
        mode = "memory"
        hub = InMemoryEventHub()
        store = InMemoryItemStore(events=hub)
        channel = hub

    notifier: Notifier
    if settings.resend_api_key:
        notifier = ResendNotifier(
            api_key=settings.resend_api_key,
            sender=settings.notifier_sender,
            timeout_seconds=settings.sweep.notifier_timeout_ms / 1000,
        )
    else:
        logger.warning("RESEND_API_KEY is not set; emails are recorded by the stub notifier", extra={"role": role.name})
        notifier = StubNotifier()

    if settings.base_url_is_local:
        logger.warning(
            "APP_BASE_URL points at localhost; access links will not work for recipients",
            extra={"role": role.name},
        )

    storage = StubPayloadStorage()
    worker = DeliveryWorker(
        store=store,
        notifier=notifier,
        app_base_url=settings.app_base_url,
        notifier_timeout_ms=settings.sweep.notifier_timeout_ms,
    )
    scheduler = SweepScheduler(store=store, worker=worker, settings=settings.sweep, events=channel)
    reactor = ChangeReactor(channel=channel, scheduler=scheduler) if settings.realtime_trigger_enabled else None
    api_deps = ApiDeps(
        store=store,
        storage=storage,
        scheduler=scheduler,
        channel=channel,
        app_base_url=settings.app_base_url,
        access_link_ttl_seconds=settings.access_link_ttl_seconds,
    )

    return RuntimeContainer(
        settings=settings,
        mode=mode,
        store=store,
        storage=storage,
        notifier=notifier,
        channel=channel,
        worker=worker,
        scheduler=scheduler,
        reactor=reactor,
        api_deps=api_deps,
        timer_enabled=role.runs_timer,
        on_startup=on_startup,
        on_shutdown=on_shutdown,
    )
