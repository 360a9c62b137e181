from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Protocol, Union

logger = logging.getLogger(__name__)

NOTIFIABLE_EVENT_STATUSES = frozenset({"pending", "confirmed"})


class EventNotFoundError(KeyError):
    """Raised when an operation references an event id that does not exist."""


class UserNotFoundError(KeyError):
    """Raised when an operation references a user id that does not exist."""


class NotificationStoreError(RuntimeError):
    """Raised when the backing store cannot be read or written."""


class BatchLimitExceededError(RuntimeError):
    """Raised when a caller hands a batch larger than the downstream hard limit."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class EventRecord:
    event_id: str
    starts_at: datetime
    status: str
    participant_ids: tuple[str, ...] = ()
    title: str = ""
    reminders_sent: dict[str, bool] = field(default_factory=dict)
    participant_reminders: dict[str, bool] = field(default_factory=dict)

    def is_reminded(self, lead_time_label: str) -> bool:
        return bool(self.reminders_sent.get(lead_time_label, False))

    def participant_opted_in(self, user_id: str) -> bool:
        return self.participant_reminders.get(user_id, True) is not False


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    display_name: str = ""
    push_token: str | None = None
    notification_preferences: dict[str, bool] = field(default_factory=dict)
    variant_assignments: dict[str, str] = field(default_factory=dict)

    def allows(self, category: str) -> bool:
        return self.notification_preferences.get(category, True) is not False

    @property
    def deliverable_token(self) -> str | None:
        if self.push_token is None:
            return None
        token = self.push_token.strip()
        return token or None


@dataclass(frozen=True)
class NotificationRecord:
    record_id: str
    user_id: str
    notification_type: str
    title: str
    body: str
    action_type: str | None
    action_data: str | None
    created_at: datetime
    is_read: bool = False


@dataclass(frozen=True)
class ReminderFlagWrite:
    event_id: str
    lead_time_label: str


@dataclass(frozen=True)
class ClearPushTokenWrite:
    user_id: str
    push_token: str


@dataclass(frozen=True)
class NotificationRecordWrite:
    user_id: str
    notification_type: str
    title: str
    body: str
    action_type: str | None = None
    action_data: str | None = None
    created_at: datetime = field(default_factory=_now_utc)


WriteOperation = Union[ReminderFlagWrite, ClearPushTokenWrite, NotificationRecordWrite]


@dataclass(frozen=True)
class BatchCommitResult:
    committed_count: int
    missing_event_count: int = 0
    stale_token_count: int = 0


class EventStore(Protocol):
    def find_events_in_window(self, start: datetime, end: datetime) -> list[EventRecord]: ...

    def get_event(self, event_id: str) -> EventRecord: ...


class UserStore(Protocol):
    def get_users(self, user_ids: list[str]) -> list[UserRecord]: ...

    def get_user(self, user_id: str) -> UserRecord: ...

    def assign_variant(self, user_id: str, experiment_id: str, variant_id: str) -> str: ...


class WriteTarget(Protocol):
    def commit_batch(self, operations: list[WriteOperation]) -> BatchCommitResult: ...


class NotificationStore(EventStore, UserStore, WriteTarget, Protocol):
    def reset(self) -> None: ...

    def upsert_event(self, event: EventRecord) -> None: ...

    def upsert_user(self, user: UserRecord) -> None: ...

    def list_notification_records(self, user_id: str) -> list[NotificationRecord]: ...


class InMemoryNotificationStore:
    """Thread-safe in-memory events, users and notification inbox."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._record_counter = count(1)
        self._events: dict[str, EventRecord] = {}
        self._users: dict[str, UserRecord] = {}
        self._records: dict[str, list[NotificationRecord]] = {}

    def reset(self) -> None:
        with self._lock:
            self._record_counter = count(1)
            self._events.clear()
            self._users.clear()
            self._records.clear()

    def upsert_event(self, event: EventRecord) -> None:
        with self._lock:
            self._events[event.event_id] = EventRecord(
                **{**event.__dict__, "starts_at": _coerce_utc(event.starts_at)}
            )

    def upsert_user(self, user: UserRecord) -> None:
        with self._lock:
            self._users[user.user_id] = user

    def get_event(self, event_id: str) -> EventRecord:
        with self._lock:
            event = self._events.get(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    def find_events_in_window(self, start: datetime, end: datetime) -> list[EventRecord]:
        window_start = _coerce_utc(start)
        window_end = _coerce_utc(end)
        with self._lock:
            matches = [
                event
                for event in self._events.values()
                if window_start <= event.starts_at < window_end
            ]
        return sorted(matches, key=lambda item: (item.starts_at, item.event_id))

    def get_user(self, user_id: str) -> UserRecord:
        with self._lock:
            user = self._users.get(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def get_users(self, user_ids: list[str]) -> list[UserRecord]:
        with self._lock:
            return [self._users[user_id] for user_id in user_ids if user_id in self._users]

    def assign_variant(self, user_id: str, experiment_id: str, variant_id: str) -> str:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            existing = user.variant_assignments.get(experiment_id)
            if existing is not None:
                return existing
            self._users[user_id] = UserRecord(
                **{
                    **user.__dict__,
                    "variant_assignments": {**user.variant_assignments, experiment_id: variant_id},
                }
            )
            return variant_id

    def commit_batch(self, operations: list[WriteOperation]) -> BatchCommitResult:
        committed = 0
        missing_events = 0
        stale_tokens = 0
        with self._lock:
            for operation in operations:
                if isinstance(operation, ReminderFlagWrite):
                    event = self._events.get(operation.event_id)
                    if event is None:
                        missing_events += 1
                        logger.warning(
                            "skipping reminder flag for missing event event_id=%s lead_time=%s",
                            operation.event_id,
                            operation.lead_time_label,
                        )
                        continue
                    self._events[event.event_id] = EventRecord(
                        **{
                            **event.__dict__,
                            "reminders_sent": {**event.reminders_sent, operation.lead_time_label: True},
                        }
                    )
                    committed += 1
                elif isinstance(operation, ClearPushTokenWrite):
                    user = self._users.get(operation.user_id)
                    if user is None or user.push_token != operation.push_token:
                        stale_tokens += 1
                        continue
                    self._users[user.user_id] = UserRecord(**{**user.__dict__, "push_token": None})
                    committed += 1
                else:
                    record = NotificationRecord(
                        record_id=f"ntf_{next(self._record_counter):06d}",
                        user_id=operation.user_id,
                        notification_type=operation.notification_type,
                        title=operation.title,
                        body=operation.body,
                        action_type=operation.action_type,
                        action_data=operation.action_data,
                        created_at=_coerce_utc(operation.created_at),
                    )
                    self._records.setdefault(operation.user_id, []).append(record)
                    committed += 1
        return BatchCommitResult(
            committed_count=committed,
            missing_event_count=missing_events,
            stale_token_count=stale_tokens,
        )

    def list_notification_records(self, user_id: str) -> list[NotificationRecord]:
        with self._lock:
            records = list(self._records.get(user_id, []))
        return sorted(records, key=lambda item: item.created_at, reverse=True)
