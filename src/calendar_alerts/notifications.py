"""
When a notification is due, and under which key it is remembered as sent.

Every delivery is identified by (kind, recipient, fingerprint). The store
keeps one mark per key, so a tick that runs twice over the same window sends
each message at most once.

Windows are half-open ``[start, start + width)``. A window narrower than two
scheduler ticks could fall entirely between two ticks, so ``NotificationWindows``
refuses such configurations.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta

from calendar_alerts.models import EventGroup, NewsItem, NotificationKind, RawEvent
from calendar_alerts.utils.time import to_tz


@dataclass(frozen=True)
class NotificationWindows:
    tick_minutes: int = 3

    reminder_lead_minutes: int = 15
    reminder_width_minutes: int = 6

    result_delay_minutes: int = 0
    result_duration_minutes: int = 120

    quiet_start_hour: int = 23
    quiet_end_hour: int = 8

    daily_hour: int = 8
    daily_width_minutes: int = 6

    def __post_init__(self) -> None:
        if self.tick_minutes <= 0:
            raise ValueError("tick_minutes must be positive")
        floor = 2 * self.tick_minutes
        for name in ("reminder_width_minutes", "result_duration_minutes", "daily_width_minutes"):
            width = getattr(self, name)
            if width < floor:
                raise ValueError(f"{name}={width} must be at least twice the tick interval ({floor} minutes)")
        for name in ("quiet_start_hour", "quiet_end_hour", "daily_hour"):
            hour = getattr(self, name)
            if not 0 <= hour <= 23:
                raise ValueError(f"{name}={hour} is not an hour of the day")

    @property
    def reminder_lead(self) -> timedelta:
        return timedelta(minutes=self.reminder_lead_minutes)

    @property
    def reminder_width(self) -> timedelta:
        return timedelta(minutes=self.reminder_width_minutes)

    @property
    def result_delay(self) -> timedelta:
        return timedelta(minutes=self.result_delay_minutes)

    @property
    def result_duration(self) -> timedelta:
        return timedelta(minutes=self.result_duration_minutes)


def is_quiet_hours(now: datetime, tz_name: str, windows: NotificationWindows) -> bool:
    hour = to_tz(now, tz_name).hour
    start, end = windows.quiet_start_hour, windows.quiet_end_hour
    if start == end:
        return False
    if start < end:
        return start <= hour < end
    # wraps midnight, e.g. 23 -> 8
    return hour >= start or hour < end


def reminder_due(instant: datetime | None, now: datetime, windows: NotificationWindows) -> bool:
    if instant is None:
        return False
    opens = instant - windows.reminder_lead
    return opens <= now < opens + windows.reminder_width


def result_due(event: RawEvent, now: datetime, windows: NotificationWindows) -> bool:
    if event.time_instant is None or not event.is_result:
        return False
    opens = event.time_instant + windows.result_delay
    return opens <= now < opens + windows.result_duration


def daily_due(now: datetime, tz_name: str, windows: NotificationWindows) -> bool:
    local = to_tz(now, tz_name)
    opens = local.replace(hour=windows.daily_hour, minute=0, second=0, microsecond=0)
    return opens <= local < opens + timedelta(minutes=windows.daily_width_minutes)


def event_fingerprint(event: RawEvent) -> str:
    """Stable per-release identity; source is included so feeds never share marks."""
    when = event.time_instant.isoformat() if event.time_instant is not None else (event.time or "").strip()
    material = f"{event.source}|{event.currency}|{event.title.strip()}|{when}"
    return hashlib.md5(material.encode("utf-8")).hexdigest()


def group_fingerprint(group: EventGroup) -> str:
    return f"{group.events[0].source}_{group.group_id}"


def news_fingerprint(item: NewsItem) -> str:
    published = item.published.isoformat() if item.published is not None else ""
    return hashlib.md5(f"{item.title}|{published}".encode("utf-8")).hexdigest()


def daily_fingerprint(now: datetime, tz_name: str) -> str:
    return to_tz(now, tz_name).date().isoformat()


def mark_key(kind: NotificationKind | str, recipient_id: int, fingerprint: str) -> str:
    kind_value = kind.value if isinstance(kind, NotificationKind) else kind
    return f"{kind_value}_{recipient_id}_{fingerprint}"
