from __future__ import annotations

from typing import Iterable

from .store import NOTIFIABLE_EVENT_STATUSES, EventRecord
from .windowing import LeadTime


def skip_reason(event: EventRecord, lead_time: LeadTime) -> str | None:
    if event.status == "cancelled":
        return "cancelled"
    if event.status not in NOTIFIABLE_EVENT_STATUSES:
        return "status_not_notifiable"
    if event.is_reminded(lead_time.label):
        return "already_reminded"
    return None


def filter_due_events(events: Iterable[EventRecord], lead_time: LeadTime) -> list[EventRecord]:
    """Events still owed the ``lead_time`` reminder. Pure; nothing is marked here."""
    return [event for event in events if skip_reason(event, lead_time) is None]
