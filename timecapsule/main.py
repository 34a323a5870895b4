from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import uuid

import uvicorn

from timecapsule.api.handlers.sweep import sweep_response
from timecapsule.api.http_app import build_app
from timecapsule.domain.errors import SweepError
from timecapsule.logging_setup import configure_logging
from timecapsule.roles import SUPPORTED_ROLES, validate_role
from timecapsule.services.bootstrap import RuntimeContainer, build_runtime_container


def _default_port(role: str) -> int:
    if role == "api":
        return 8000
    return 8100


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="TimeCapsule delivery runtime")
    parser.add_argument("--role", required=True, help="Runtime role")
    parser.add_argument("--host", default=os.getenv("APP_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument(
        "--dry-run-startup",
        action="store_true",
        help="Validate startup and exit",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable code reload (dev mode)",
    )
    parser.add_argument(
        "--sweep-once",
        action="store_true",
        help="Run a single sweep, print its counters as JSON and exit (cron trigger)",
    )
    return parser.parse_args(argv)


def _app_from_container(container: RuntimeContainer, *, role: str, run_id: str) -> object:
    return build_app(
        role=role,
        run_id=run_id,
        api_deps=container.api_deps,
        sweeper=container.scheduler if container.timer_enabled else None,
        sweeper_runtime_settings=container.settings.sweeper,
        reactor=container.reactor,
        mode=container.mode,
        on_startup=container.on_startup,
        on_shutdown=container.on_shutdown,
    )


def create_runtime_app() -> object:
    role_name = os.getenv("APP_ROLE", "api")
    role = validate_role(role_name)
    run_id = str(uuid.uuid4())
    configure_logging()
    container = build_runtime_container(role)
    return _app_from_container(container, role=role.name, run_id=run_id)


async def sweep_once(container: RuntimeContainer) -> dict[str, int]:
    if container.on_startup is not None:
        await container.on_startup()
    try:
        result = await container.scheduler.sweep(trigger="cron")
    finally:
        if container.on_shutdown is not None:
            await container.on_shutdown()
    return sweep_response(result).model_dump(by_alias=True)


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        role = validate_role(args.role)
    except ValueError as exc:
        supported = ", ".join(SUPPORTED_ROLES)
        sys.stderr.write(f"ERROR: {exc}\n")
        sys.stderr.write(f"Try one of: {supported}\n")
        return 2

    configure_logging()
    run_id = str(uuid.uuid4())
    logger = logging.getLogger("runtime")

    logger.info(
        "runtime initialized",
        extra={"role": role.name, "service": role.name, "run_id": run_id},
    )

    if args.dry_run_startup:
        logger.info(
            "dry-run startup complete",
            extra={"role": role.name, "service": role.name, "run_id": run_id},
        )
        return 0

    container = build_runtime_container(role)

    if args.sweep_once:
        try:
            counters = asyncio.run(sweep_once(container))
        except SweepError as exc:
            sys.stderr.write(f"ERROR: {exc}\n")
            return 1
        sys.stdout.write(json.dumps(counters) + "\n")
        return 0

    port = args.port if args.port is not None else _default_port(role.name)
    if args.reload:
        os.environ["APP_ROLE"] = role.name
        uvicorn.run(
            "timecapsule.main:create_runtime_app",
            host=args.host,
            port=port,
            log_level="warning",
            reload=True,
            factory=True,
        )
    else:
        app = _app_from_container(container, role=role.name, run_id=run_id)
        uvicorn.run(app, host=args.host, port=port, log_level="warning")
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
