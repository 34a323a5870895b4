from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
import logging

from fastapi import FastAPI, File, Form, Header, HTTPException, Query, Response, UploadFile, WebSocket

from timecapsule.api.handlers.access import open_access_link_handler
from timecapsule.api.handlers.deps import ApiDeps
from timecapsule.api.handlers.items import (
    create_item_handler,
    delete_item_handler,
    get_item_handler,
    list_items_handler,
    update_item_handler,
)
from timecapsule.api.handlers.socket import socket_session_handler
from timecapsule.api.handlers.sweep import run_sweep_handler
from timecapsule.api.schemas import (
    OWNER_ID_HEADER,
    AccessResponse,
    DeliveryItemResponse,
    ErrorResponse,
    HealthResponse,
    ListItemsResponse,
    ReadyResponse,
    SweeperMetrics,
    SweepResponse,
    UpdateItemRequest,
)
from timecapsule.config import SweeperRuntimeSettings, sweeper_runtime_settings_from_env
from timecapsule.domain.dto import ScheduleUploadCommand, UpdateScheduleCommand
from timecapsule.domain.errors import (
    DomainDependencyError,
    DomainError,
    DomainInvariantError,
    DomainValidationError,
    ItemNotEditableError,
    ItemNotFoundError,
)
from timecapsule.domain.models import DeliveryStatus
from timecapsule.realtime.reactor import ChangeReactor
from timecapsule.workers.runner import SweeperRuntimeState, run_sweeper_until_stopped
from timecapsule.workers.sweep import SweepScheduler

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def http_status_for(exc: DomainError) -> int:
    if isinstance(exc, DomainValidationError):
        return 400
    if isinstance(exc, ItemNotFoundError):
        return 404
    if isinstance(exc, (ItemNotEditableError, DomainInvariantError)):
        return 409
    if isinstance(exc, DomainDependencyError):
        return 503
    return 500


def build_app(
    role: str,
    run_id: str,
    api_deps: ApiDeps | None = None,
    sweeper: SweepScheduler | None = None,
    sweeper_runtime_settings: SweeperRuntimeSettings | None = None,
    reactor: ChangeReactor | None = None,
    mode: str = "memory",
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
) -> FastAPI:
    logger = logging.getLogger("runtime")
    sweeper_state: SweeperRuntimeState | None = None
    sweeper_task: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal sweeper_task, sweeper_state
        del app
        stop_event: asyncio.Event | None = None

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if reactor is not None:
            await reactor.start()

        if sweeper is not None:
            settings = sweeper_runtime_settings or sweeper_runtime_settings_from_env()
            sweeper_state = SweeperRuntimeState()
            stop_event = asyncio.Event()
            sweeper_task = asyncio.create_task(
                run_sweeper_until_stopped(
                    scheduler=sweeper,
                    role=role,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    state=sweeper_state,
                )
            )

        yield

        if stop_event is not None and sweeper_task is not None:
            stop_event.set()
            await sweeper_task

        if reactor is not None:
            await reactor.stop()

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="timecapsule-scheduler", version="0.1.0", lifespan=lifespan)

    def _require_deps() -> ApiDeps:
        if api_deps is None:
            raise HTTPException(status_code=503, detail="api dependencies are not available")
        return api_deps

    def _http_error(exc: DomainError) -> HTTPException:
        return HTTPException(status_code=http_status_for(exc), detail=str(exc))

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role, mode=mode)

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        sweeper_enabled = sweeper is not None
        sweeper_ready = True
        metrics = SweeperMetrics(
            started=False,
            stopped=False,
            ticks_total=0,
            busy_ticks_total=0,
            idle_ticks_total=0,
            items_processed_total=0,
            errors_total=0,
        )
        if sweeper_enabled:
            sweeper_ready = (
                sweeper_state is not None
                and sweeper_state.started
                and sweeper_task is not None
                and not sweeper_task.done()
            )
            if sweeper_state is not None:
                metrics = SweeperMetrics(
                    started=sweeper_state.started,
                    stopped=sweeper_state.stopped,
                    ticks_total=sweeper_state.ticks_total,
                    busy_ticks_total=sweeper_state.busy_ticks_total,
                    idle_ticks_total=sweeper_state.idle_ticks_total,
                    items_processed_total=sweeper_state.items_processed_total,
                    errors_total=sweeper_state.errors_total,
                )

        return ReadyResponse(
            status="ready",
            role=role,
            mode=mode,
            sweeper_enabled=sweeper_enabled,
            sweeper_ready=sweeper_ready,
            sweeper_metrics=metrics,
            realtime_enabled=reactor is not None,
            realtime_ready=reactor is None or reactor.running,
        )

    @app.post(
        "/items",
        status_code=201,
        response_model=DeliveryItemResponse,
        responses={**ERROR_RESPONSES, 422: {"model": ErrorResponse}},
        tags=["Items"],
    )
    async def create_item(
        file: UploadFile = File(...),
        recipient_email: str = Form(..., min_length=3, max_length=320),
        scheduled_at: datetime = Form(...),
        owner_id: str = Header(..., alias=OWNER_ID_HEADER, min_length=1, max_length=128),
    ) -> DeliveryItemResponse:
        deps = _require_deps()
        payload = await file.read()
        try:
            return await create_item_handler(
                cmd=ScheduleUploadCommand(
                    owner_id=owner_id,
                    file_name=file.filename or "",
                    file_type=file.content_type or "",
                    payload=payload,
                    recipient_email=recipient_email,
                    scheduled_at=scheduled_at,
                ),
                api_deps=deps,
            )
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.get("/items", response_model=ListItemsResponse, responses=ERROR_RESPONSES, tags=["Items"])
    async def list_items(
        status: DeliveryStatus | None = Query(default=None),
        owner_id: str = Header(..., alias=OWNER_ID_HEADER, min_length=1, max_length=128),
    ) -> ListItemsResponse:
        deps = _require_deps()
        try:
            return await list_items_handler(owner_id=owner_id, status=status, api_deps=deps)
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.get("/items/{item_id}", response_model=DeliveryItemResponse, responses=ERROR_RESPONSES, tags=["Items"])
    async def get_item(
        item_id: str,
        owner_id: str = Header(..., alias=OWNER_ID_HEADER, min_length=1, max_length=128),
    ) -> DeliveryItemResponse:
        deps = _require_deps()
        try:
            return await get_item_handler(item_id=item_id, owner_id=owner_id, api_deps=deps)
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.patch("/items/{item_id}", response_model=DeliveryItemResponse, responses=ERROR_RESPONSES, tags=["Items"])
    async def update_item(
        item_id: str,
        request: UpdateItemRequest,
        owner_id: str = Header(..., alias=OWNER_ID_HEADER, min_length=1, max_length=128),
    ) -> DeliveryItemResponse:
        deps = _require_deps()
        try:
            return await update_item_handler(
                cmd=UpdateScheduleCommand(
                    item_id=item_id,
                    owner_id=owner_id,
                    recipient_email=request.recipient_email,
                    scheduled_at=request.scheduled_at,
                ),
                api_deps=deps,
            )
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.delete("/items/{item_id}", status_code=204, responses=ERROR_RESPONSES, tags=["Items"])
    async def delete_item(
        item_id: str,
        owner_id: str = Header(..., alias=OWNER_ID_HEADER, min_length=1, max_length=128),
    ) -> Response:
        deps = _require_deps()
        try:
            await delete_item_handler(item_id=item_id, owner_id=owner_id, api_deps=deps)
        except DomainError as exc:
            raise _http_error(exc) from exc
        return Response(status_code=204)

    @app.post("/sweep", response_model=SweepResponse, responses=ERROR_RESPONSES, tags=["Sweep"])
    async def run_sweep() -> SweepResponse:
        deps = _require_deps()
        try:
            return await run_sweep_handler(api_deps=deps)
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.get("/access/{access_token}", response_model=AccessResponse, responses=ERROR_RESPONSES, tags=["Access"])
    async def open_access_link(access_token: str) -> AccessResponse:
        deps = _require_deps()
        try:
            return await open_access_link_handler(access_token=access_token, api_deps=deps)
        except DomainError as exc:
            raise _http_error(exc) from exc

    @app.websocket("/ws")
    async def socket(websocket: WebSocket, owner_id: str | None = Query(default=None)) -> None:
        if api_deps is None:
            await websocket.close(code=1013)
            return
        await socket_session_handler(websocket, api_deps=api_deps, owner_id=owner_id)

    return app
