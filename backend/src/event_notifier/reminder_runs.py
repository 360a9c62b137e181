from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .batch_writer import STORE_WRITE_BATCH_LIMIT, MarkSentWriter
from .content import ContentSelector
from .dedup import filter_due_events
from .dispatcher import Delivery, Dispatcher
from .models import EventReminderResult, LeadTimeTickResult, TickResponse
from .notifier import DeliveryUnavailableError
from .recipients import RecipientResolver
from .store import (
    ClearPushTokenWrite,
    EventRecord,
    EventStore,
    NotificationRecordWrite,
    ReminderFlagWrite,
    WriteOperation,
    WriteTarget,
)
from .windowing import LeadTime, compute_window

logger = logging.getLogger(__name__)

EVENT_REMINDER_CATEGORY = "event_reminder"
DEFAULT_EVENT_TITLE = "活動"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _resolve_zone(name: str) -> ZoneInfo | timezone:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown display timezone %s; falling back to UTC", name)
        return timezone.utc


@dataclass(frozen=True)
class _EventOutcome:
    result: EventReminderResult
    writes: list[WriteOperation] = field(default_factory=list)


class ReminderTickService:
    def __init__(
        self,
        *,
        event_store: EventStore,
        write_target: WriteTarget,
        resolver: RecipientResolver,
        selector: ContentSelector,
        dispatcher: Dispatcher,
        lead_times: tuple[LeadTime, ...],
        trigger_period: timedelta,
        max_jitter: timedelta = timedelta(minutes=5),
        max_workers: int = 8,
        write_batch_limit: int = STORE_WRITE_BATCH_LIMIT,
        write_flush_threshold: int = 450,
        display_timezone: str = "Asia/Taipei",
        record_notifications: bool = False,
    ) -> None:
        if not lead_times:
            raise ValueError("at least one lead time is required")
        self._event_store = event_store
        self._write_target = write_target
        self._resolver = resolver
        self._selector = selector
        self._dispatcher = dispatcher
        self._lead_times = lead_times
        self._trigger_period = trigger_period
        self._max_jitter = max_jitter
        self._max_workers = max(1, max_workers)
        self._write_batch_limit = write_batch_limit
        self._write_flush_threshold = write_flush_threshold
        self._display_zone = _resolve_zone(display_timezone)
        self._record_notifications = record_notifications

    @property
    def lead_times(self) -> tuple[LeadTime, ...]:
        return self._lead_times

    def run_tick(self, now: datetime | None = None, *, dry_run: bool = False) -> TickResponse:
        run_at = _coerce_utc(now) if now is not None else _now_utc()
        writer = MarkSentWriter(
            target=self._write_target,
            max_batch_operations=self._write_batch_limit,
            flush_threshold=self._write_flush_threshold,
        )

        lead_results = [
            self._run_lead_time(lead_time, run_at, writer=writer, dry_run=dry_run)
            for lead_time in self._lead_times
        ]

        committed = 0
        missing = 0
        if not dry_run:
            commit = writer.flush()
            committed = commit.committed_count
            missing = commit.missing_event_count

        response = TickResponse(
            run_at=run_at,
            dry_run=dry_run,
            eligible_count=sum(item.eligible_count for item in lead_results),
            sent_event_count=sum(item.sent_event_count for item in lead_results),
            failed_event_count=sum(item.failed_event_count for item in lead_results),
            success_count=sum(item.success_count for item in lead_results),
            failure_count=sum(item.failure_count for item in lead_results),
            committed_write_count=committed,
            missing_event_count=missing,
            lead_times=lead_results,
        )
        logger.info(
            "reminder tick finished run_at=%s dry_run=%s events=%d sent=%d failed=%d failed_events=%d",
            run_at.isoformat(),
            dry_run,
            response.eligible_count,
            response.success_count,
            response.failure_count,
            response.failed_event_count,
        )
        return response

    def _run_lead_time(
        self,
        lead_time: LeadTime,
        run_at: datetime,
        *,
        writer: MarkSentWriter,
        dry_run: bool,
    ) -> LeadTimeTickResult:
        window = compute_window(
            run_at,
            lead_time,
            trigger_period=self._trigger_period,
            max_jitter=self._max_jitter,
        )
        events = self._event_store.find_events_in_window(window.start, window.end)
        due = filter_due_events(events, lead_time)
        order = {event.event_id: index for index, event in enumerate(due)}

        results: list[EventReminderResult] = []
        if due:
            with ThreadPoolExecutor(max_workers=min(self._max_workers, len(due))) as pool:
                futures = {
                    pool.submit(self._process_event, event, lead_time, run_at, dry_run): event for event in due
                }
                for future in as_completed(futures):
                    event = futures[future]
                    try:
                        outcome = future.result()
                    except Exception as exc:
                        logger.exception(
                            "reminder failed event_id=%s lead_time=%s",
                            event.event_id,
                            lead_time.label,
                        )
                        outcome = _EventOutcome(
                            result=EventReminderResult(
                                event_id=event.event_id,
                                lead_time=lead_time.label,
                                status="failed",
                                reason="processing_error",
                                error_code=type(exc).__name__,
                                error_message=str(exc),
                            )
                        )
                    for operation in outcome.writes:
                        writer.queue(operation)
                    results.append(outcome.result)
        results.sort(key=lambda item: order[item.event_id])

        lead_result = LeadTimeTickResult(
            lead_time=lead_time.label,
            window_start=window.start,
            window_end=window.end,
            evaluated_count=len(events),
            eligible_count=len(due),
            skipped_count=len(events) - len(due),
            sent_event_count=sum(1 for item in results if item.status in {"sent", "no_recipients"}),
            failed_event_count=sum(1 for item in results if item.status == "failed"),
            success_count=sum(item.success_count for item in results),
            failure_count=sum(item.failure_count for item in results),
            results=results,
        )
        logger.info(
            "lead_time=%s window=[%s, %s) events=%d eligible=%d sent=%d failed=%d",
            lead_time.label,
            window.start.isoformat(),
            window.end.isoformat(),
            lead_result.evaluated_count,
            lead_result.eligible_count,
            lead_result.success_count,
            lead_result.failure_count,
        )
        return lead_result

    def _render_params(self, event: EventRecord, lead_time: LeadTime, run_at: datetime) -> dict[str, str]:
        starts_at = _coerce_utc(event.starts_at)
        hours_left = max(0, round((starts_at - run_at).total_seconds() / 3600))
        return {
            "eventTitle": event.title or DEFAULT_EVENT_TITLE,
            "eventTime": starts_at.astimezone(self._display_zone).strftime("%m/%d %H:%M"),
            "leadTime": lead_time.label,
            "hoursLeft": str(hours_left),
        }

    def _process_event(
        self,
        event: EventRecord,
        lead_time: LeadTime,
        run_at: datetime,
        dry_run: bool,
    ) -> _EventOutcome:
        resolved = self._resolver.resolve(
            event.participant_ids,
            category=EVENT_REMINDER_CATEGORY,
            event=event,
        )
        flag = ReminderFlagWrite(event_id=event.event_id, lead_time_label=lead_time.label)

        if dry_run:
            return _EventOutcome(
                result=EventReminderResult(
                    event_id=event.event_id,
                    lead_time=lead_time.label,
                    status="dry_run",
                    recipient_count=len(resolved.recipients),
                    skipped_recipient_count=len(resolved.skipped),
                )
            )

        if not resolved.recipients:
            logger.info(
                "no deliverable recipients event_id=%s lead_time=%s; marking reminded",
                event.event_id,
                lead_time.label,
            )
            return _EventOutcome(
                result=EventReminderResult(
                    event_id=event.event_id,
                    lead_time=lead_time.label,
                    status="no_recipients",
                    reason="no_deliverable_recipients",
                    skipped_recipient_count=len(resolved.skipped),
                ),
                writes=[flag],
            )

        experiment_id = self._selector.catalog.event_reminder_experiment_id(lead_time.label)
        params = self._render_params(event, lead_time, run_at)
        deliveries = [
            Delivery(
                push_token=recipient.push_token,
                content=self._selector.select(experiment_id, recipient.user, params),
                user_id=recipient.user.user_id,
            )
            for recipient in resolved.recipients
        ]

        try:
            summary = self._dispatcher.dispatch(
                deliveries,
                data={
                    "type": "event_reminder",
                    "eventId": event.event_id,
                    "leadTime": lead_time.label,
                    "actionType": "view_event",
                    "actionData": event.event_id,
                },
            )
        except DeliveryUnavailableError as exc:
            logger.warning(
                "delivery unavailable event_id=%s lead_time=%s code=%s; will retry next tick",
                event.event_id,
                lead_time.label,
                exc.error_code,
            )
            return _EventOutcome(
                result=EventReminderResult(
                    event_id=event.event_id,
                    lead_time=lead_time.label,
                    status="failed",
                    reason="delivery_unavailable",
                    recipient_count=len(resolved.recipients),
                    skipped_recipient_count=len(resolved.skipped),
                    error_code=exc.error_code,
                    error_message=exc.message,
                )
            )

        writes: list[WriteOperation] = [flag]
        for invalid in summary.invalid_tokens:
            if invalid.user_id is not None:
                writes.append(ClearPushTokenWrite(user_id=invalid.user_id, push_token=invalid.push_token))
        if self._record_notifications:
            writes.extend(
                NotificationRecordWrite(
                    user_id=delivery.user_id,
                    notification_type=EVENT_REMINDER_CATEGORY,
                    title=delivery.content.title,
                    body=delivery.content.body,
                    action_type="view_event",
                    action_data=event.event_id,
                    created_at=run_at,
                )
                for delivery in deliveries
                if delivery.user_id is not None and not delivery.content.is_empty
            )

        return _EventOutcome(
            result=EventReminderResult(
                event_id=event.event_id,
                lead_time=lead_time.label,
                status="sent",
                recipient_count=len(resolved.recipients),
                skipped_recipient_count=len(resolved.skipped),
                success_count=summary.success_count,
                failure_count=summary.failure_count,
                invalid_token_count=len(summary.invalid_tokens),
            ),
            writes=writes,
        )
