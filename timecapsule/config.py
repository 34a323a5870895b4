from __future__ import annotations

from dataclasses import dataclass
import os

DEFAULT_APP_BASE_URL = "http://localhost:8000"
DEFAULT_NOTIFIER_SENDER = "TimeCapsule <onboarding@resend.dev>"


@dataclass(frozen=True)
class SweepSettings:
    max_items: int = 100
    concurrency: int = 5
    notifier_timeout_ms: int = 10000
    claim_timeout_seconds: int = 900
    extra_pass: bool = True


@dataclass(frozen=True)
class SweeperRuntimeSettings:
    interval_ms: int = 30000
    error_backoff_ms: int = 5000


@dataclass(frozen=True)
class AppSettings:
    app_base_url: str = DEFAULT_APP_BASE_URL
    database_url: str | None = None
    resend_api_key: str | None = None
    notifier_sender: str = DEFAULT_NOTIFIER_SENDER
    realtime_trigger_enabled: bool = True
    access_link_ttl_seconds: int = 3600
    sweep: SweepSettings = SweepSettings()
    sweeper: SweeperRuntimeSettings = SweeperRuntimeSettings()

    @property
    def base_url_is_local(self) -> bool:
        return "localhost" in self.app_base_url or "127.0.0.1" in self.app_base_url


def sweep_settings_from_env() -> SweepSettings:
    return SweepSettings(
        max_items=_env_int("SWEEP_MAX_ITEMS", 100),
        concurrency=_env_int("SWEEP_CONCURRENCY", 5),
        notifier_timeout_ms=_env_int("NOTIFIER_TIMEOUT_MS", 10000),
        claim_timeout_seconds=_env_int("SWEEP_CLAIM_TIMEOUT_SECONDS", 900),
        extra_pass=_env_bool("SWEEP_EXTRA_PASS", True),
    )


def sweeper_runtime_settings_from_env() -> SweeperRuntimeSettings:
    return SweeperRuntimeSettings(
        interval_ms=_env_int("SWEEPER_INTERVAL_MS", 30000),
        error_backoff_ms=_env_int("SWEEPER_ERROR_BACKOFF_MS", 5000),
    )


def app_settings_from_env() -> AppSettings:
    return AppSettings(
        app_base_url=_env_str("APP_BASE_URL") or DEFAULT_APP_BASE_URL,
        database_url=_env_str("DATABASE_URL"),
        resend_api_key=_env_str("RESEND_API_KEY"),
        notifier_sender=_env_str("NOTIFIER_SENDER") or DEFAULT_NOTIFIER_SENDER,
        realtime_trigger_enabled=_env_bool("REALTIME_TRIGGER_ENABLED", True),
        access_link_ttl_seconds=_env_int("ACCESS_LINK_TTL_SECONDS", 3600),
        sweep=sweep_settings_from_env(),
        sweeper=sweeper_runtime_settings_from_env(),
    )


def _env_str(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default
