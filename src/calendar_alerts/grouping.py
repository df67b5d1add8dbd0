"""
Clusters same-currency events released within a few minutes of each other
into named groups, so a busy release slot (e.g. US jobs report) is delivered
as one message instead of five.
"""
import re
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Iterable, Sequence

from calendar_alerts.models import IMPACT_RANK, EventGroup, RawEvent, TimelineItem
from calendar_alerts.utils.time import UTC_TZ, floor_minutes
from calendar_alerts.utils.values import has_data, is_placeholder_actual, is_tentative_time

MIN_GROUP_SIZE = 3
GROUP_WINDOW = timedelta(minutes=5)
GROUP_ID_BUCKET_MINUTES = 5

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC_TZ)

CURRENCY_FLAGS: dict[str, str] = {
    "USD": "🇺🇸",
    "EUR": "🇪🇺",
    "GBP": "🇬🇧",
    "JPY": "🇯🇵",
    "AUD": "🇦🇺",
    "NZD": "🇳🇿",
    "CAD": "🇨🇦",
    "CHF": "🇨🇭",
    "CNY": "🇨🇳",
}


def _keywords(pattern: str) -> Callable[[str], bool]:
    rx = re.compile(pattern, re.IGNORECASE)
    return lambda title: rx.search(title or "") is not None


# Evaluated in order; on equal vote counts the earlier tag wins.
THEME_RULES: tuple[tuple[str, Callable[[str], bool]], ...] = (
    ("labor", _keywords(r"Jobless|Employment|Unemployment|Claims|NFP|Payrolls")),
    ("trade", _keywords(r"Trade|Import|Export|Balance")),
    ("inflation", _keywords(r"Inflation|CPI|PPI|Price")),
    ("gdp", _keywords(r"GDP|Growth|Output")),
    ("pmi", _keywords(r"PMI|Manufacturing|Services|Composite")),
    ("housing", _keywords(r"Housing|Home Sales|Building Permits|Starts")),
    ("speech", _keywords(r"Speech|Statement|Conference|Minutes")),
    ("rate", _keywords(r"Rate Decision|Interest Rate|Policy Rate")),
    ("inventory", _keywords(r"Inventor")),
)

THEME_MIXED = "mixed"
THEME_OTHER = "other"


def event_ts(event: RawEvent) -> float:
    """Sort key in seconds; undated events get the zero sentinel."""
    if event.time_instant is None:
        return 0.0
    return (event.time_instant - _EPOCH).total_seconds()


def is_groupable(event: RawEvent) -> bool:
    return event.time_instant is not None and not is_tentative_time(event.time)


def event_theme(title: str) -> str:
    for tag, matches in THEME_RULES:
        if matches(title):
            return tag
    return THEME_OTHER


def theme_breakdown(events: Sequence[RawEvent]) -> list[tuple[str, int]]:
    """Per-member theme counts, most common first; ties keep rule order."""
    counts = Counter(event_theme(e.title) for e in events)
    order = [tag for tag, _ in THEME_RULES] + [THEME_OTHER]
    return sorted(counts.items(), key=lambda kv: (-kv[1], order.index(kv[0])))


def detect_theme(events: Sequence[RawEvent]) -> str:
    """Theme with the most member matches, if it covers at least half the members."""
    if not events:
        return THEME_MIXED
    votes = Counter()
    for ev in events:
        for tag, matches in THEME_RULES:
            if matches(ev.title):
                votes[tag] += 1

    best_tag, best_count = THEME_MIXED, 0
    for tag, _ in THEME_RULES:
        if votes[tag] > best_count:
            best_tag, best_count = tag, votes[tag]

    if best_count and best_count >= len(events) * 0.5:
        return best_tag
    return THEME_MIXED


def most_important_event(events: Sequence[RawEvent]) -> RawEvent:
    if not events:
        raise ValueError("most_important_event requires at least one event")
    return min(
        events,
        key=lambda e: (-IMPACT_RANK.get(e.impact, 0), -int(has_data(e)), event_ts(e)),
    )


def group_title(events: Sequence[RawEvent], currency: str) -> str:
    flag = CURRENCY_FLAGS.get(currency, "")
    return f"{flag} {most_important_event(events).title}".strip()


def dominant_impact(events: Iterable[RawEvent]) -> str:
    return max((e.impact for e in events), key=lambda i: IMPACT_RANK.get(i, 0))


def _slot_label(anchor: RawEvent) -> str:
    return anchor.time_instant.astimezone(UTC_TZ).strftime("%H:%M")


def make_group_id(currency: str, anchor_instant: datetime) -> str:
    bucket = floor_minutes(anchor_instant, GROUP_ID_BUCKET_MINUTES)
    return f"{currency}_{bucket.strftime('%Y%m%d_%H%M')}"


def build_group(members: Sequence[RawEvent]) -> EventGroup:
    anchor = members[0]
    return EventGroup(
        group_id=make_group_id(anchor.currency, anchor.time_instant),
        time=_slot_label(anchor),
        currency=anchor.currency,
        title=group_title(members, anchor.currency),
        impact=dominant_impact(members),
        events=tuple(members),
        has_results=any(not is_placeholder_actual(e.actual) for e in members),
        theme=detect_theme(members),
    )


def group_events(events: Iterable[RawEvent]) -> list[TimelineItem]:
    ordered = sorted(events, key=lambda e: (event_ts(e), e.title or ""))
    used: set[int] = set()
    result: list[TimelineItem] = []

    for i, base in enumerate(ordered):
        if i in used:
            continue
        if not is_groupable(base):
            used.add(i)
            result.append(base)
            continue

        cluster = [
            j
            for j, other in enumerate(ordered)
            if j not in used
            and other.currency == base.currency
            and is_groupable(other)
            and abs(other.time_instant - base.time_instant) <= GROUP_WINDOW
        ]

        if len(cluster) >= MIN_GROUP_SIZE:
            used.update(cluster)
            result.append(build_group([ordered[j] for j in cluster]))
        else:
            used.add(i)
            result.append(base)

    timed = [item for item in result if item.time_instant is not None]
    undated = [item for item in result if item.time_instant is None]
    timed.sort(key=lambda item: item.time_instant)
    return timed + undated


def split_timeline(items: Iterable[TimelineItem]) -> tuple[list[EventGroup], list[RawEvent]]:
    groups: list[EventGroup] = []
    singles: list[RawEvent] = []
    for item in items:
        if isinstance(item, EventGroup):
            groups.append(item)
        else:
            singles.append(item)
    return groups, singles
