from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import timedelta
from threading import Lock

from .config import Settings, get_settings
from .content import ContentSelector, ExperimentCatalog
from .dispatcher import Dispatcher
from .immediate import ImmediateNotificationService
from .notifier import FcmPushSender, FirebaseAppProvider, PushSender, StubPushSender
from .recipients import RecipientResolver
from .reminder_runs import ReminderTickService
from .store import NotificationStore
from .store_backends import create_notification_store
from .windowing import parse_lead_times

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotifierRuntime:
    settings: Settings
    store: NotificationStore
    sender: PushSender
    catalog: ExperimentCatalog
    tick_service: ReminderTickService
    immediate_service: ImmediateNotificationService


def create_push_sender(settings: Settings) -> PushSender:
    if settings.push_sender_type == "fcm":
        provider = FirebaseAppProvider(
            project_id=settings.fcm_project_id,
            credentials_json=settings.fcm_credentials_json,
            http_timeout_seconds=settings.fcm_timeout_seconds,
        )
        return FcmPushSender(app_provider=provider, dry_run=settings.fcm_dry_run)
    return StubPushSender(enabled=settings.push_enabled)


def build_runtime(
    settings: Settings,
    *,
    store: NotificationStore | None = None,
    sender: PushSender | None = None,
    catalog: ExperimentCatalog | None = None,
    rng: random.Random | None = None,
) -> NotifierRuntime:
    active_store = store or create_notification_store(
        backend=settings.notification_store_backend,
        database_url=settings.database_url,
    )
    active_sender = sender or create_push_sender(settings)
    active_catalog = catalog or ExperimentCatalog.from_settings_path(settings.notification_experiments_path)
    selector = ContentSelector(catalog=active_catalog, user_store=active_store, rng=rng)
    tick_service = ReminderTickService(
        event_store=active_store,
        write_target=active_store,
        resolver=RecipientResolver(user_store=active_store, chunk_size=settings.user_query_chunk_size),
        selector=selector,
        dispatcher=Dispatcher(sender=active_sender, batch_limit=settings.multicast_batch_limit),
        lead_times=parse_lead_times(settings.reminder_lead_times),
        trigger_period=timedelta(minutes=settings.reminder_trigger_period_minutes),
        max_jitter=timedelta(minutes=settings.reminder_max_jitter_minutes),
        max_workers=settings.reminder_tick_max_workers,
        write_batch_limit=settings.write_batch_limit,
        write_flush_threshold=settings.write_batch_flush_threshold,
        display_timezone=settings.event_display_timezone,
        record_notifications=settings.reminder_record_notifications,
    )
    immediate_service = ImmediateNotificationService(
        user_store=active_store,
        write_target=active_store,
        selector=selector,
        sender=active_sender,
        record_notifications=settings.reminder_record_notifications,
    )
    return NotifierRuntime(
        settings=settings,
        store=active_store,
        sender=active_sender,
        catalog=active_catalog,
        tick_service=tick_service,
        immediate_service=immediate_service,
    )


_runtime_lock = Lock()
_runtime: NotifierRuntime | None = None


def get_runtime() -> NotifierRuntime:
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            settings = get_settings()
            _runtime = build_runtime(settings)
            logger.info(
                "notifier runtime initialized store=%s sender=%s lead_times=%s",
                settings.notification_store_backend,
                settings.push_sender_type,
                ",".join(settings.reminder_lead_times),
            )
        return _runtime


def set_runtime(runtime: NotifierRuntime | None) -> None:
    global _runtime
    with _runtime_lock:
        _runtime = runtime
