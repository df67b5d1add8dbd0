from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

UTC_TZ = timezone.utc


def now_utc() -> datetime:
    return datetime.now(tz=UTC_TZ)


def to_tz(dt: datetime, tz_name: str) -> datetime:
    # treat naive as UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC_TZ)
    return dt.astimezone(ZoneInfo(tz_name))


def day_bounds(now: datetime, tz_name: str, *, offset_days: int = 0) -> tuple[datetime, datetime]:
    """
    Returns [local 00:00, next local 00:00) for the day containing `now` in tz,
    shifted by offset_days. Bounds are tz-aware in tz_name.
    """
    tz = ZoneInfo(tz_name)
    local_day = to_tz(now, tz_name).date() + timedelta(days=offset_days)
    start = datetime.combine(local_day, time.min, tzinfo=tz)
    end = datetime.combine(local_day + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


def floor_minutes(dt: datetime, step: int) -> datetime:
    dt = dt.astimezone(UTC_TZ)
    return dt.replace(minute=(dt.minute // step) * step, second=0, microsecond=0)


def format_hhmm(dt: datetime, tz_name: str) -> str:
    return to_tz(dt, tz_name).strftime("%H:%M")
