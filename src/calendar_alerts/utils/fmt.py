from __future__ import annotations

import re
from typing import Iterable, Mapping, Optional

from calendar_alerts.grouping import CURRENCY_FLAGS, split_timeline, theme_breakdown
from calendar_alerts.models import AnalysisResult, EventGroup, NewsItem, RawEvent, TimelineItem
from calendar_alerts.utils.time import format_hhmm
from calendar_alerts.utils.values import is_empty, is_placeholder_actual

DISCORD_MAX_LEN = 2000

IMPACT_MARKERS = {"High": "🔴", "Medium": "🟠", "Low": "🟡"}
SENTIMENT_MARKERS = {"Pos": "🟢 Positive", "Neg": "🔴 Negative", "Neutral": "⚪ Neutral"}

THEME_LABELS = {
    "labor": "Labor market",
    "trade": "Trade",
    "inflation": "Inflation",
    "gdp": "Growth",
    "pmi": "Business activity",
    "housing": "Housing",
    "speech": "Speeches",
    "rate": "Rates",
    "inventory": "Inventories",
    "mixed": "Mixed releases",
    "other": "Other",
}

COUNTRY_PREFIXES: dict[str, tuple[str, ...]] = {
    "USD": ("United States",),
    "GBP": ("United Kingdom",),
    "EUR": ("Euro Area", "Germany", "Italy", "France", "Spain", "Netherlands"),
    "AUD": ("Australia",),
    "CAD": ("Canada",),
    "JPY": ("Japan",),
    "CHF": ("Switzerland",),
    "NZD": ("New Zealand",),
}

_PREFIX_PATTERNS = {
    cur: re.compile(r"^(" + "|".join(re.escape(p) for p in sorted(names, key=len, reverse=True)) + r")\s+", re.IGNORECASE)
    for cur, names in COUNTRY_PREFIXES.items()
}

HEADERS = {
    "event": "📌 Today, time not fixed",
    "reminder": "⏰ Starting in {minutes} min",
    "result": "📊 Result",
}


def strip_country_prefix(currency: str, title: str) -> str:
    """'United Kingdom Unemployment Rate' under GBP -> 'Unemployment Rate'."""
    t = (title or "").strip()
    pattern = _PREFIX_PATTERNS.get(currency)
    if not t or pattern is None:
        return t
    return pattern.sub("", t).strip() or t


def currency_label(currency: str) -> str:
    flag = CURRENCY_FLAGS.get(currency, "")
    return f"{flag} {currency}".strip()


def impact_marker(impact: str) -> str:
    return IMPACT_MARKERS.get(impact, "⚪")


def local_time(item: TimelineItem, tz_name: str) -> str:
    if item.time_instant is not None:
        return format_hhmm(item.time_instant, tz_name)
    return (item.time or "").strip() or "—"


def _values_line(event: RawEvent) -> str:
    actual = "—" if is_placeholder_actual(event.actual) else event.actual
    forecast = "—" if is_empty(event.forecast) else event.forecast
    previous = "—" if is_empty(event.previous) else event.previous
    return f"Actual: `{actual}` | Forecast: `{forecast}` | Previous: `{previous}`"


def _analysis_lines(analysis: Optional[AnalysisResult]) -> list[str]:
    if analysis is None:
        return []
    lines = [
        f"Impact score: **{analysis.score}/10** | {SENTIMENT_MARKERS.get(analysis.sentiment, analysis.sentiment)}",
    ]
    if analysis.summary:
        lines.append(f"_{analysis.summary}_")
    lines.append(analysis.reasoning)
    if analysis.affected_pairs:
        lines.append("Pairs: " + ", ".join(analysis.affected_pairs))
    return lines


def format_event_message(
    event: RawEvent,
    tz_name: str,
    *,
    kind: str = "reminder",
    lead_minutes: int = 15,
    analysis: Optional[AnalysisResult] = None,
) -> str:
    header = HEADERS.get(kind, HEADERS["reminder"]).format(minutes=lead_minutes)
    title = strip_country_prefix(event.currency, event.title)
    lines = [
        f"**{header}**",
        f"{impact_marker(event.impact)} [{currency_label(event.currency)}] **{title}**",
        f"🕐 {local_time(event, tz_name)} | Source: {event.source}",
        _values_line(event),
    ]
    extra = _analysis_lines(analysis)
    if extra:
        lines.append("")
        lines.extend(extra)
    return "\n".join(lines)


def format_group_message(
    group: EventGroup,
    tz_name: str,
    *,
    kind: str = "reminder",
    lead_minutes: int = 15,
    analysis: Optional[AnalysisResult] = None,
) -> str:
    header = HEADERS.get(kind, HEADERS["reminder"]).format(minutes=lead_minutes)
    theme = THEME_LABELS.get(group.theme, group.theme.title())
    lines = [
        f"**{header}**",
        f"{impact_marker(group.impact)} **{group.title}** ({theme}, {len(group.events)} releases)",
        f"🕐 {local_time(group, tz_name)} | Source: {group.events[0].source}",
        "Themes: " + ", ".join(f"{THEME_LABELS.get(tag, tag.title())} ×{n}" for tag, n in theme_breakdown(group.events)),
        "",
    ]
    for ev in group.events:
        title = strip_country_prefix(ev.currency, ev.title)
        lines.append(f"{impact_marker(ev.impact)} {title}")
        lines.append(f"   {_values_line(ev)}")
    extra = _analysis_lines(analysis)
    if extra:
        lines.append("")
        lines.extend(extra)
    return "\n".join(lines)


def _digest_lines(items: Iterable[TimelineItem], tz_name: str) -> list[str]:
    lines: list[str] = []
    for item in items:
        if isinstance(item, EventGroup):
            lines.append(
                f"{impact_marker(item.impact)} {local_time(item, tz_name)} **{item.title}** (+{len(item.events) - 1} more)"
            )
            continue
        title = strip_country_prefix(item.currency, item.title)
        lines.append(f"{impact_marker(item.impact)} {local_time(item, tz_name)} [{item.currency}] {title}")
    return lines


def format_daily_digest(timelines: Mapping[str, list[TimelineItem]], tz_name: str, local_date: str) -> str:
    """Per-source sections; sources with nothing scheduled are omitted."""
    lines = [f"📅 **Economic calendar for {local_date}**"]
    for source, items in timelines.items():
        if not items:
            continue
        groups, singles = split_timeline(items)
        lines.append("")
        lines.append(f"━━━ {source} ({len(singles) + sum(len(g.events) for g in groups)} events) ━━━")
        lines.extend(_digest_lines(items, tz_name))
    return "\n".join(lines)


def format_day_analysis(local_date: str, overview: str) -> str:
    return f"📊 **Detailed analysis for {local_date}**\n\n{overview.strip()}"


def format_news_message(item: NewsItem, analysis: Optional[AnalysisResult] = None) -> str:
    lines = [f"📰 **{item.title}**"]
    if item.summary:
        lines.append(item.summary)
    lines.append(f"Source: {item.source} | {item.link}")
    extra = _analysis_lines(analysis)
    if extra:
        lines.append("")
        lines.extend(extra)
    return "\n".join(lines)


def chunk_message(text: str, max_len: int = DISCORD_MAX_LEN) -> list[str]:
    """
    Split on line boundaries to stay within the transport limit.
    Lines longer than the limit are cut hard.
    """
    if len(text) <= max_len:
        return [text]

    chunks: list[str] = []
    current: list[str] = []
    current_len = 0

    def flush():
        nonlocal current, current_len
        if current:
            chunks.append("\n".join(current).strip())
            current = []
            current_len = 0

    for line in text.split("\n"):
        while len(line) > max_len:
            flush()
            chunks.append(line[:max_len])
            line = line[max_len:]
        add_len = len(line) + 1
        if current_len + add_len > max_len:
            flush()
        current.append(line)
        current_len += add_len

    flush()
    return [c for c in chunks if c]
