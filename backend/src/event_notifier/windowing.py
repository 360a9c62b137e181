from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

_LEAD_TIME_RE = re.compile(r"^(\d+)([mhd])$")
_UNIT_TO_KWARG = {"m": "minutes", "h": "hours", "d": "days"}


@dataclass(frozen=True)
class LeadTime:
    label: str
    delta: timedelta

    @property
    def flag_name(self) -> str:
        return f"reminded_{self.label}"


@dataclass(frozen=True)
class ReminderWindow:
    """Half-open start-time range ``[start, end)`` targeted by one lead time."""

    lead_time: LeadTime
    start: datetime
    end: datetime

    def contains(self, starts_at: datetime) -> bool:
        value = _coerce_utc(starts_at)
        return self.start <= value < self.end


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_lead_time(label: str) -> LeadTime:
    normalized = label.strip().lower()
    match = _LEAD_TIME_RE.match(normalized)
    if match is None:
        raise ValueError(f"invalid lead time label: {label!r}")
    amount = int(match.group(1))
    if amount <= 0:
        raise ValueError(f"lead time must be positive: {label!r}")
    delta = timedelta(**{_UNIT_TO_KWARG[match.group(2)]: amount})
    return LeadTime(label=normalized, delta=delta)


def parse_lead_times(labels: tuple[str, ...] | list[str]) -> tuple[LeadTime, ...]:
    parsed: list[LeadTime] = []
    seen: set[str] = set()
    for label in labels:
        lead_time = parse_lead_time(label)
        if lead_time.label in seen:
            continue
        seen.add(lead_time.label)
        parsed.append(lead_time)
    return tuple(parsed)


def compute_window(
    now: datetime,
    lead_time: LeadTime,
    *,
    trigger_period: timedelta,
    max_jitter: timedelta = timedelta(0),
) -> ReminderWindow:
    """Window of event start times a tick at ``now`` is responsible for.

    The range is ``[now + L - J, now + L + P + J)``: consecutive ticks ``P``
    apart cover every start time, and overlap only by the jitter margin,
    which the per-event reminded flag absorbs.
    """
    if trigger_period <= timedelta(0):
        raise ValueError("trigger_period must be positive")
    if max_jitter < timedelta(0):
        raise ValueError("max_jitter must not be negative")
    anchor = _coerce_utc(now) + lead_time.delta
    return ReminderWindow(
        lead_time=lead_time,
        start=anchor - max_jitter,
        end=anchor + trigger_period + max_jitter,
    )
