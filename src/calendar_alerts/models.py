from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal, Optional, Union

from calendar_alerts.utils.values import is_placeholder_actual

Impact = Literal["High", "Medium", "Low"]
SourcePreference = Literal["ForexFactory", "Myfxbook", "Both"]
ImpactFilter = Literal["high_only", "medium_only", "both"]

SOURCE_FOREXFACTORY = "ForexFactory"
SOURCE_MYFXBOOK = "Myfxbook"
ALL_SOURCES = (SOURCE_FOREXFACTORY, SOURCE_MYFXBOOK)

IMPACT_RANK: dict[str, int] = {"High": 3, "Medium": 2, "Low": 1}

DEFAULT_CURRENCIES = ("USD", "EUR", "GBP", "JPY")


@dataclass(frozen=True)
class RawEvent:
    title: str
    currency: str
    impact: str  # "High" | "Medium" | "Low"

    # time as shown by the source ("8:30am", "13:30", "Tentative", "All Day")
    time: str

    # absolute UTC instant when the time string could be resolved
    time_instant: Optional[datetime] = None

    forecast: str = "—"
    previous: str = "—"
    actual: str = "—"

    source: str = SOURCE_FOREXFACTORY

    @property
    def is_result(self) -> bool:
        return not is_placeholder_actual(self.actual)


# The record kept for a dedup key is still a RawEvent; the alias names its role.
CanonicalEvent = RawEvent


@dataclass(frozen=True)
class EventGroup:
    group_id: str
    time: str
    currency: str
    title: str
    impact: str
    events: tuple[RawEvent, ...]
    has_results: bool
    theme: str

    @property
    def time_instant(self) -> Optional[datetime]:
        return self.events[0].time_instant if self.events else None


TimelineItem = Union[EventGroup, RawEvent]


class NotificationKind(str, Enum):
    EVENT = "event"
    REMINDER = "reminder"
    RESULT = "result"
    RSS = "rss"
    DAILY = "daily"
    DAILY_ANALYSIS = "daily-analysis"
    GROUP_REMINDER = "group-reminder"
    GROUP_RESULT = "group-result"


@dataclass(frozen=True)
class RecipientSettings:
    timezone: str = "Europe/Kyiv"
    monitored_currencies: frozenset[str] = frozenset(DEFAULT_CURRENCIES)
    source: str = "Both"  # SourcePreference
    impact_filter: str = "both"  # ImpactFilter
    quiet_hours_enabled: bool = True
    rss_enabled: bool = True

    def sources(self) -> tuple[str, ...]:
        if self.source == "Both":
            return ALL_SOURCES
        return (self.source,)

    def allows_impact(self, impact: str) -> bool:
        if self.impact_filter == "high_only":
            return impact == "High"
        if self.impact_filter == "medium_only":
            return impact == "Medium"
        return impact in ("High", "Medium")


@dataclass(frozen=True)
class Recipient:
    recipient_id: int
    username: Optional[str] = None
    registered_at: Optional[datetime] = None


@dataclass(frozen=True)
class AnalysisResult:
    score: int
    sentiment: str  # "Pos" | "Neg" | "Neutral"
    summary: str
    reasoning: str
    affected_pairs: tuple[str, ...] = ()


@dataclass(frozen=True)
class NewsItem:
    title: str
    link: str
    summary: str
    source: str
    published: Optional[datetime] = None


@dataclass(frozen=True)
class DataIssue:
    source: str
    type: str  # NO_TIME | PAST_TOO_FAR | MISSING_REQUIRED_FIELD | CONFLICT_BETWEEN_SOURCES
    message: str
    event_id: Optional[str] = None
    details: dict = field(default_factory=dict)


@dataclass(frozen=True)
class FilterResult:
    deliver: list[RawEvent]
    skipped: list[DataIssue]
