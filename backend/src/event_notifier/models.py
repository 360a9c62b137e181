from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

EventStatus = Literal["pending", "confirmed", "cancelled"]
NotificationCategory = Literal["event_reminder", "new_message", "match", "rating", "system"]
EventReminderStatus = Literal["sent", "no_recipients", "failed", "dry_run"]
ImmediateDispatchStatus = Literal["sent", "skipped", "failed"]
ChatMessageType = Literal["text", "image", "gif", "sticker", "audio", "video", "file"]


def _normalize_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Variant(BaseModel):
    variant_id: str = Field(min_length=1, max_length=64)
    title: str = Field(max_length=256)
    body: str = Field(max_length=1024)
    emoji: str | None = Field(default=None, max_length=16)
    weight: float | None = Field(default=None, ge=0)


class ExperimentDefinition(BaseModel):
    experiment_id: str = Field(min_length=1, max_length=128)
    notification_type: NotificationCategory
    variants: list[Variant] = Field(min_length=1)
    default_variant_id: str = Field(min_length=1, max_length=64)

    @field_validator("variants")
    @classmethod
    def _require_unique_variant_ids(cls, value: list[Variant]) -> list[Variant]:
        seen: set[str] = set()
        for variant in value:
            if variant.variant_id in seen:
                raise ValueError(f"duplicate variant_id: {variant.variant_id}")
            seen.add(variant.variant_id)
        return value

    def variant(self, variant_id: str | None) -> Variant | None:
        if variant_id is None:
            return None
        for candidate in self.variants:
            if candidate.variant_id == variant_id:
                return candidate
        return None


class TickRequest(BaseModel):
    dry_run: bool = False
    now_override: datetime | None = None

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        return _normalize_utc(value)


class EventReminderResult(BaseModel):
    event_id: str
    lead_time: str
    status: EventReminderStatus
    reason: str | None = None
    recipient_count: int = 0
    skipped_recipient_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    invalid_token_count: int = 0
    error_code: str | None = None
    error_message: str | None = None


class LeadTimeTickResult(BaseModel):
    lead_time: str
    window_start: datetime
    window_end: datetime
    evaluated_count: int
    eligible_count: int
    skipped_count: int
    sent_event_count: int
    failed_event_count: int
    success_count: int
    failure_count: int
    results: list[EventReminderResult] = Field(default_factory=list)


class TickResponse(BaseModel):
    run_at: datetime
    dry_run: bool
    eligible_count: int
    sent_event_count: int
    failed_event_count: int
    success_count: int
    failure_count: int
    committed_write_count: int = 0
    missing_event_count: int = 0
    lead_times: list[LeadTimeTickResult]


class ImmediateDispatchRequest(BaseModel):
    recipient_id: str = Field(min_length=1, max_length=128)
    category: NotificationCategory = "system"
    title: str | None = Field(default=None, max_length=256)
    body: str | None = Field(default=None, max_length=1024)
    experiment_id: str | None = Field(default=None, min_length=1, max_length=128)
    params: dict[str, str] = Field(default_factory=dict)
    data: dict[str, str] = Field(default_factory=dict)
    image_url: str | None = Field(default=None, min_length=1, max_length=2048)

    @model_validator(mode="after")
    def _require_content_source(self) -> "ImmediateDispatchRequest":
        has_explicit = self.title is not None and self.body is not None
        if not has_explicit and self.experiment_id is None:
            raise ValueError("either title and body or experiment_id is required")
        return self


class ImmediateDispatchResponse(BaseModel):
    recipient_id: str
    status: ImmediateDispatchStatus
    reason: str | None = None
    experiment_id: str | None = None
    variant_id: str | None = None
    message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class ChatMessageNotificationRequest(BaseModel):
    chat_room_id: str = Field(min_length=1, max_length=128)
    message_id: str | None = Field(default=None, max_length=128)
    sender_id: str = Field(min_length=1, max_length=128)
    sender_name: str | None = Field(default=None, max_length=128)
    recipient_id: str | None = Field(default=None, min_length=1, max_length=128)
    participant_ids: list[str] = Field(default_factory=list, max_length=64)
    text: str = ""
    message_type: ChatMessageType | str = "text"

    @model_validator(mode="after")
    def _require_recipient_source(self) -> "ChatMessageNotificationRequest":
        if self.recipient_id is None and not self.participant_ids:
            raise ValueError("either recipient_id or participant_ids is required")
        return self


class MatchNotificationRequest(BaseModel):
    user1_id: str = Field(min_length=1, max_length=128)
    user2_id: str = Field(min_length=1, max_length=128)
    chat_room_id: str | None = Field(default=None, max_length=128)

    @model_validator(mode="after")
    def _require_distinct_users(self) -> "MatchNotificationRequest":
        if self.user1_id == self.user2_id:
            raise ValueError("user1_id and user2_id must differ")
        return self


class MatchNotificationResponse(BaseModel):
    results: list[ImmediateDispatchResponse]


class ExperimentListResponse(BaseModel):
    items: list[ExperimentDefinition]
