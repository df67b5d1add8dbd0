"""
Helpers for calendar cell values.

Sources render "no data yet" in many ways ("PENDING", "—", "n/a", empty).
All of them count as placeholders so an event is never reported as a result
before a real number is published.
"""
import re

PLACEHOLDER_RE = re.compile(r"^(pending|tbd|tba|n/a|na|—|-|\.\.\.)$", re.IGNORECASE)
EMPTY_MARK = "—"


def is_empty(value: str | None) -> bool:
    t = (value or "").strip()
    return not t or t in ("—", "-")


def is_placeholder_actual(value: str | None) -> bool:
    t = (value or "").strip()
    return not t or bool(PLACEHOLDER_RE.match(t))


def normalize_value(value: str | None) -> str:
    t = (value or "").strip()
    return EMPTY_MARK if is_placeholder_actual(t) else t


def has_data(event) -> bool:
    """True when the event carries a real actual or a forecast."""
    return not is_placeholder_actual(event.actual) or not is_empty(event.forecast)


def is_tentative_time(time_str: str | None) -> bool:
    """Tentative and all-day slots have no fixed time and never join a group."""
    t = (time_str or "").strip().lower()
    return t == "tentative" or "day" in t


def is_special_time(time_str: str | None) -> bool:
    t = (time_str or "").strip().lower()
    return not t or t in ("—", "-") or is_tentative_time(t)


def normalize_title(title: str) -> str:
    return re.sub(r"\s+", " ", (title or "").strip().lower())
