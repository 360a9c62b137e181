from __future__ import annotations

import json
import logging
import secrets
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text, create_engine, delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .store import (
    BatchCommitResult,
    ClearPushTokenWrite,
    EventNotFoundError,
    EventRecord,
    InMemoryNotificationStore,
    NotificationRecord,
    NotificationStore,
    NotificationStoreError,
    ReminderFlagWrite,
    UserNotFoundError,
    UserRecord,
    WriteOperation,
)

logger = logging.getLogger(__name__)


class NotificationStoreBase(DeclarativeBase):
    pass


class _EventRow(NotificationStoreBase):
    __tablename__ = "events"

    event_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    title: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    participant_ids_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    participant_reminders_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _EventReminderFlagRow(NotificationStoreBase):
    __tablename__ = "event_reminder_flags"

    event_id: Mapped[str] = mapped_column(String(128), ForeignKey("events.event_id"), primary_key=True)
    lead_time_label: Mapped[str] = mapped_column(String(16), primary_key=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _UserRow(NotificationStoreBase):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    push_token: Mapped[str | None] = mapped_column(String(512), nullable=True)
    notification_preferences_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _VariantAssignmentRow(NotificationStoreBase):
    __tablename__ = "variant_assignments"

    user_id: Mapped[str] = mapped_column(String(128), ForeignKey("users.user_id"), primary_key=True)
    experiment_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    variant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _NotificationRecordRow(NotificationStoreBase):
    __tablename__ = "notification_records"

    record_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    notification_type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    action_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    action_data: Mapped[str | None] = mapped_column(String(256), nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise NotificationStoreError(f"{action} failed: {exc}") from exc


def _parse_id_list(raw: str) -> tuple[str, ...]:
    parsed = json.loads(raw or "[]")
    if not isinstance(parsed, list):
        raise ValueError("expected a JSON list")
    return tuple(str(item) for item in parsed)


def _parse_bool_map(raw: str) -> dict[str, bool]:
    parsed = json.loads(raw or "{}")
    if not isinstance(parsed, dict):
        raise ValueError("expected a JSON object")
    return {str(key): bool(value) for key, value in parsed.items()}


class SqlAlchemyNotificationStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for NOTIFICATION_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            NotificationStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with _store_errors("store reset"):
            with self._session() as session:
                with session.begin():
                    session.execute(delete(_NotificationRecordRow))
                    session.execute(delete(_VariantAssignmentRow))
                    session.execute(delete(_EventReminderFlagRow))
                    session.execute(delete(_UserRow))
                    session.execute(delete(_EventRow))

    def upsert_event(self, event: EventRecord) -> None:
        now = _now_utc()
        with _store_errors("event upsert"):
            with self._session() as session:
                with session.begin():
                    row = session.get(_EventRow, event.event_id)
                    if row is None:
                        row = _EventRow(event_id=event.event_id)
                        session.add(row)
                    row.title = event.title
                    row.starts_at = _coerce_utc(event.starts_at)
                    row.status = event.status
                    row.participant_ids_json = json.dumps(list(event.participant_ids))
                    row.participant_reminders_json = json.dumps(event.participant_reminders, sort_keys=True)
                    row.updated_at = now
                    session.flush()
                    for label, sent in event.reminders_sent.items():
                        if sent and session.get(_EventReminderFlagRow, (event.event_id, label)) is None:
                            session.add(_EventReminderFlagRow(event_id=event.event_id, lead_time_label=label, sent_at=now))

    def upsert_user(self, user: UserRecord) -> None:
        now = _now_utc()
        with _store_errors("user upsert"):
            with self._session() as session:
                with session.begin():
                    row = session.get(_UserRow, user.user_id)
                    if row is None:
                        row = _UserRow(user_id=user.user_id)
                        session.add(row)
                    row.display_name = user.display_name
                    row.push_token = user.push_token
                    row.notification_preferences_json = json.dumps(user.notification_preferences, sort_keys=True)
                    row.updated_at = now
                    session.flush()
                    for experiment_id, variant_id in user.variant_assignments.items():
                        if session.get(_VariantAssignmentRow, (user.user_id, experiment_id)) is None:
                            session.add(
                                _VariantAssignmentRow(
                                    user_id=user.user_id,
                                    experiment_id=experiment_id,
                                    variant_id=variant_id,
                                    assigned_at=now,
                                )
                            )

    def _flags_for(self, session, event_ids: list[str]) -> dict[str, dict[str, bool]]:
        flags: dict[str, dict[str, bool]] = {event_id: {} for event_id in event_ids}
        if not event_ids:
            return flags
        rows = session.execute(
            select(_EventReminderFlagRow).where(_EventReminderFlagRow.event_id.in_(event_ids))
        ).scalars()
        for row in rows:
            flags[row.event_id][row.lead_time_label] = True
        return flags

    def _to_event(self, row: _EventRow, flags: dict[str, bool]) -> EventRecord | None:
        try:
            participant_ids = _parse_id_list(row.participant_ids_json)
            participant_reminders = _parse_bool_map(row.participant_reminders_json)
        except ValueError as exc:
            logger.warning("skipping malformed event row event_id=%s: %s", row.event_id, exc)
            return None
        return EventRecord(
            event_id=row.event_id,
            starts_at=_coerce_utc(row.starts_at),
            status=row.status,
            participant_ids=participant_ids,
            title=row.title,
            reminders_sent=dict(flags),
            participant_reminders=participant_reminders,
        )

    def get_event(self, event_id: str) -> EventRecord:
        with _store_errors("event lookup"):
            with self._session() as session:
                row = session.get(_EventRow, event_id)
                if row is None:
                    raise EventNotFoundError(event_id)
                flags = self._flags_for(session, [event_id])
                event = self._to_event(row, flags[event_id])
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    def find_events_in_window(self, start: datetime, end: datetime) -> list[EventRecord]:
        with _store_errors("event window query"):
            with self._session() as session:
                rows = list(
                    session.execute(
                        select(_EventRow)
                        .where(_EventRow.starts_at >= _coerce_utc(start))
                        .where(_EventRow.starts_at < _coerce_utc(end))
                        .order_by(_EventRow.starts_at, _EventRow.event_id)
                    ).scalars()
                )
                flags = self._flags_for(session, [row.event_id for row in rows])
                events = [self._to_event(row, flags[row.event_id]) for row in rows]
        return [event for event in events if event is not None]

    def _to_user(self, row: _UserRow, assignments: dict[str, str]) -> UserRecord | None:
        try:
            preferences = _parse_bool_map(row.notification_preferences_json)
        except ValueError as exc:
            logger.warning("skipping malformed user row user_id=%s: %s", row.user_id, exc)
            return None
        return UserRecord(
            user_id=row.user_id,
            display_name=row.display_name,
            push_token=row.push_token,
            notification_preferences=preferences,
            variant_assignments=dict(assignments),
        )

    def _assignments_for(self, session, user_ids: list[str]) -> dict[str, dict[str, str]]:
        assignments: dict[str, dict[str, str]] = {user_id: {} for user_id in user_ids}
        if not user_ids:
            return assignments
        rows = session.execute(
            select(_VariantAssignmentRow).where(_VariantAssignmentRow.user_id.in_(user_ids))
        ).scalars()
        for row in rows:
            assignments[row.user_id][row.experiment_id] = row.variant_id
        return assignments

    def get_user(self, user_id: str) -> UserRecord:
        users = self.get_users([user_id])
        if not users:
            raise UserNotFoundError(user_id)
        return users[0]

    def get_users(self, user_ids: list[str]) -> list[UserRecord]:
        if not user_ids:
            return []
        with _store_errors("user lookup"):
            with self._session() as session:
                rows = {
                    row.user_id: row
                    for row in session.execute(select(_UserRow).where(_UserRow.user_id.in_(user_ids))).scalars()
                }
                assignments = self._assignments_for(session, list(rows))
        users: list[UserRecord] = []
        for user_id in user_ids:
            row = rows.get(user_id)
            if row is None:
                continue
            user = self._to_user(row, assignments[user_id])
            if user is not None:
                users.append(user)
        return users

    def assign_variant(self, user_id: str, experiment_id: str, variant_id: str) -> str:
        with _store_errors("variant assignment"):
            try:
                with self._session() as session:
                    with session.begin():
                        if session.get(_UserRow, user_id) is None:
                            raise UserNotFoundError(user_id)
                        existing = session.get(_VariantAssignmentRow, (user_id, experiment_id))
                        if existing is not None:
                            return existing.variant_id
                        session.add(
                            _VariantAssignmentRow(
                                user_id=user_id,
                                experiment_id=experiment_id,
                                variant_id=variant_id,
                                assigned_at=_now_utc(),
                            )
                        )
                return variant_id
            except IntegrityError:
                # A concurrent tick assigned first; its choice is the stable one.
                with self._session() as session:
                    existing = session.get(_VariantAssignmentRow, (user_id, experiment_id))
                    if existing is None:
                        raise
                    return existing.variant_id

    def commit_batch(self, operations: list[WriteOperation]) -> BatchCommitResult:
        committed = 0
        missing_events = 0
        stale_tokens = 0
        now = _now_utc()
        with _store_errors("batch commit"):
            with self._session() as session:
                with session.begin():
                    for operation in operations:
                        if isinstance(operation, ReminderFlagWrite):
                            if session.get(_EventRow, operation.event_id) is None:
                                missing_events += 1
                                logger.warning(
                                    "skipping reminder flag for missing event event_id=%s lead_time=%s",
                                    operation.event_id,
                                    operation.lead_time_label,
                                )
                                continue
                            key = (operation.event_id, operation.lead_time_label)
                            if session.get(_EventReminderFlagRow, key) is None:
                                session.add(
                                    _EventReminderFlagRow(
                                        event_id=operation.event_id,
                                        lead_time_label=operation.lead_time_label,
                                        sent_at=now,
                                    )
                                )
                            committed += 1
                        elif isinstance(operation, ClearPushTokenWrite):
                            user = session.get(_UserRow, operation.user_id)
                            if user is None or user.push_token != operation.push_token:
                                stale_tokens += 1
                                continue
                            user.push_token = None
                            user.updated_at = now
                            committed += 1
                        else:
                            session.add(
                                _NotificationRecordRow(
                                    record_id=f"ntf_{secrets.token_hex(8)}",
                                    user_id=operation.user_id,
                                    notification_type=operation.notification_type,
                                    title=operation.title,
                                    body=operation.body,
                                    action_type=operation.action_type,
                                    action_data=operation.action_data,
                                    is_read=False,
                                    created_at=_coerce_utc(operation.created_at),
                                )
                            )
                            committed += 1
        return BatchCommitResult(
            committed_count=committed,
            missing_event_count=missing_events,
            stale_token_count=stale_tokens,
        )

    def list_notification_records(self, user_id: str) -> list[NotificationRecord]:
        with _store_errors("notification record query"):
            with self._session() as session:
                rows = session.execute(
                    select(_NotificationRecordRow)
                    .where(_NotificationRecordRow.user_id == user_id)
                    .order_by(_NotificationRecordRow.created_at.desc())
                ).scalars()
                return [
                    NotificationRecord(
                        record_id=row.record_id,
                        user_id=row.user_id,
                        notification_type=row.notification_type,
                        title=row.title,
                        body=row.body,
                        action_type=row.action_type,
                        action_data=row.action_data,
                        created_at=_coerce_utc(row.created_at),
                        is_read=row.is_read,
                    )
                    for row in rows
                ]


def create_notification_store(*, backend: str, database_url: str) -> NotificationStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyNotificationStore(database_url)
    if normalized == "inmemory":
        return InMemoryNotificationStore()
    raise RuntimeError(f"unsupported NOTIFICATION_STORE_BACKEND: {backend}")
