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


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Chingu Event Notifier"
    api_prefix: str = "/api/v1"
    reminder_lead_times: tuple[str, ...] = ("24h", "2h")
    reminder_trigger_period_minutes: float = 60.0
    reminder_max_jitter_minutes: float = 5.0
    reminder_tick_max_workers: int = 8
    reminder_record_notifications: bool = False
    reminder_allow_live_now_override: bool = False
    user_query_chunk_size: int = 10
    multicast_batch_limit: int = 500
    write_batch_limit: int = 500
    write_batch_flush_threshold: int = 450
    event_display_timezone: str = "Asia/Taipei"
    notification_store_backend: str = "inmemory"
    database_url: str = ""
    push_sender_type: str = "stub"
    push_enabled: bool = False
    fcm_project_id: str = ""
    fcm_credentials_json: str = ""
    fcm_dry_run: bool = False
    fcm_timeout_seconds: float = 10.0
    notification_experiments_path: str = ""
    trigger_signature_mode: str = "log_only"
    trigger_secret: str = "dev-trigger-secret"
    trigger_signature_max_age_seconds: int = 300
    runtime_secret_guard_mode: str = "warn"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("NOTIFIER_APP_NAME", "Chingu Event Notifier"),
        api_prefix=os.getenv("NOTIFIER_API_PREFIX", "/api/v1"),
        reminder_lead_times=_as_csv_tuple(os.getenv("REMINDER_LEAD_TIMES", "24h,2h")) or ("24h", "2h"),
        reminder_trigger_period_minutes=_as_float(os.getenv("REMINDER_TRIGGER_PERIOD_MINUTES"), 60.0),
        reminder_max_jitter_minutes=_as_float(os.getenv("REMINDER_MAX_JITTER_MINUTES"), 5.0),
        reminder_tick_max_workers=_as_int(os.getenv("REMINDER_TICK_MAX_WORKERS"), 8),
        reminder_record_notifications=_as_bool(os.getenv("REMINDER_RECORD_NOTIFICATIONS"), False),
        reminder_allow_live_now_override=_as_bool(os.getenv("REMINDER_ALLOW_LIVE_NOW_OVERRIDE"), False),
        user_query_chunk_size=_as_int(os.getenv("USER_QUERY_CHUNK_SIZE"), 10),
        multicast_batch_limit=_as_int(os.getenv("MULTICAST_BATCH_LIMIT"), 500),
        write_batch_limit=_as_int(os.getenv("WRITE_BATCH_LIMIT"), 500),
        write_batch_flush_threshold=_as_int(os.getenv("WRITE_BATCH_FLUSH_THRESHOLD"), 450),
        event_display_timezone=os.getenv("EVENT_DISPLAY_TIMEZONE", "Asia/Taipei"),
        notification_store_backend=os.getenv("NOTIFICATION_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        push_sender_type=_normalize_mode(
            os.getenv("PUSH_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "fcm"},
        ),
        push_enabled=_as_bool(os.getenv("PUSH_ENABLED"), False),
        fcm_project_id=os.getenv("FCM_PROJECT_ID", ""),
        fcm_credentials_json=os.getenv("FCM_CREDENTIALS_JSON", ""),
        fcm_dry_run=_as_bool(os.getenv("FCM_DRY_RUN"), False),
        fcm_timeout_seconds=_as_float(os.getenv("FCM_TIMEOUT_SECONDS"), 10.0),
        notification_experiments_path=os.getenv("NOTIFICATION_EXPERIMENTS_PATH", ""),
        trigger_signature_mode=_normalize_mode(
            os.getenv("TRIGGER_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        trigger_secret=os.getenv("TRIGGER_SECRET", "dev-trigger-secret"),
        trigger_signature_max_age_seconds=_as_int(os.getenv("TRIGGER_SIGNATURE_MAX_AGE_SECONDS"), 300),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.trigger_signature_mode == "enforce" and _is_placeholder(
        settings.trigger_secret,
        defaults={"dev-trigger-secret", "change-me-in-production"},
    ):
        issues.append("TRIGGER_SECRET is empty or uses a development placeholder while TRIGGER_SIGNATURE_MODE=enforce")
    if settings.push_sender_type == "fcm" and not (
        settings.fcm_credentials_json.strip() or settings.fcm_project_id.strip()
    ):
        issues.append("FCM_CREDENTIALS_JSON or FCM_PROJECT_ID is required when PUSH_SENDER_TYPE=fcm")
    if settings.notification_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when NOTIFICATION_STORE_BACKEND=postgres")
    if settings.write_batch_flush_threshold > settings.write_batch_limit:
        issues.append("WRITE_BATCH_FLUSH_THRESHOLD must not exceed WRITE_BATCH_LIMIT")
    return tuple(issues)
