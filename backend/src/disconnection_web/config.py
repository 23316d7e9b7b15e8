from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int, *, minimum: int = 1) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _as_origins(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ("http://localhost:3000",)
    origins = tuple(item.strip().rstrip("/") for item in value.split(",") if item.strip())
    return origins or ("http://localhost:3000",)


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "Water Utility Disconnection Engine"
    api_prefix: str = "/api/v1"
    store_backend: str = "inmemory"
    database_url: str = ""
    timezone: str = "Asia/Manila"
    # strict rejects disconnect-while-disconnected and reconnect-while-active.
    transition_guard_mode: str = "strict"
    overdue_page_size: int = 10
    notifications_page_size: int = 7
    sms_candidates_page_size: int = 5
    sms_logs_limit: int = 100
    sms_enabled: bool = False
    sms_transport_type: str = "stub"
    sms_api_base_url: str = ""
    sms_api_key: str = ""
    sms_sender_name: str = "WATERUTIL"
    sms_timeout_seconds: int = 30
    sms_max_attempts: int = 3
    sms_outage_threshold: int = 5
    sms_drain_batch_size: int = 100
    sms_claim_lease_seconds: int = 300
    runtime_secret_guard_mode: str = "warn"
    cors_origins: tuple[str, ...] = ("http://localhost:3000",)

    @property
    def strict_transitions(self) -> bool:
        return self.transition_guard_mode == "strict"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("UTILITY_APP_NAME", "Water Utility Disconnection Engine"),
        api_prefix=os.getenv("UTILITY_API_PREFIX", "/api/v1"),
        store_backend=_normalize_mode(
            os.getenv("UTILITY_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        timezone=os.getenv("UTILITY_TIMEZONE", "Asia/Manila"),
        transition_guard_mode=_normalize_mode(
            os.getenv("TRANSITION_GUARD_MODE"),
            default="strict",
            allowed={"strict", "permissive"},
        ),
        overdue_page_size=_as_int(os.getenv("OVERDUE_PAGE_SIZE"), 10),
        notifications_page_size=_as_int(os.getenv("NOTIFICATIONS_PAGE_SIZE"), 7),
        sms_candidates_page_size=_as_int(os.getenv("SMS_CANDIDATES_PAGE_SIZE"), 5),
        sms_logs_limit=_as_int(os.getenv("SMS_LOGS_LIMIT"), 100),
        sms_enabled=_as_bool(os.getenv("SMS_ENABLED"), False),
        sms_transport_type=_normalize_mode(
            os.getenv("SMS_TRANSPORT_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        sms_api_base_url=os.getenv("SMS_API_BASE_URL", ""),
        sms_api_key=os.getenv("SMS_API_KEY", ""),
        sms_sender_name=os.getenv("SMS_SENDER_NAME", "WATERUTIL"),
        sms_timeout_seconds=_as_int(os.getenv("SMS_TIMEOUT_SECONDS"), 30),
        sms_max_attempts=_as_int(os.getenv("SMS_MAX_ATTEMPTS"), 3),
        sms_outage_threshold=_as_int(os.getenv("SMS_OUTAGE_THRESHOLD"), 5),
        sms_drain_batch_size=_as_int(os.getenv("SMS_DRAIN_BATCH_SIZE"), 100),
        sms_claim_lease_seconds=_as_int(os.getenv("SMS_CLAIM_LEASE_SECONDS"), 300),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        cors_origins=_as_origins(os.getenv("UTILITY_CORS_ORIGINS")),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.sms_transport_type == "http":
        if not settings.sms_api_base_url.strip():
            issues.append("SMS_API_BASE_URL is required when SMS_TRANSPORT_TYPE=http")
        if not settings.sms_api_key.strip():
            issues.append("SMS_API_KEY is required when SMS_TRANSPORT_TYPE=http")
    return tuple(issues)
