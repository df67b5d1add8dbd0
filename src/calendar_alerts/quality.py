"""
Per-channel delivery filtering and cross-source consistency checks.

Nothing here raises: rejected events come back as ``DataIssue`` entries so
callers can log them and move on.
"""
import hashlib
import logging
from datetime import datetime, timedelta
from itertools import combinations
from typing import Iterable, Literal, Sequence

from rapidfuzz import fuzz

from calendar_alerts.models import DataIssue, FilterResult, RawEvent
from calendar_alerts.utils.values import is_empty, is_placeholder_actual

log = logging.getLogger(__name__)

FilterMode = Literal["general", "reminder", "ai_forecast", "ai_results"]

PAST_THRESHOLD_SCHEDULER = timedelta(hours=2)
PAST_THRESHOLD_DAILY = timedelta(hours=24)

TITLE_SIMILARITY_THRESHOLD = 70
CONFLICT_MIN_DIFF = timedelta(minutes=5)

NO_TIME = "NO_TIME"
PAST_TOO_FAR = "PAST_TOO_FAR"
MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
CONFLICT_BETWEEN_SOURCES = "CONFLICT_BETWEEN_SOURCES"


def issue_event_id(event: RawEvent) -> str:
    when = event.time_instant.isoformat() if event.time_instant else event.time
    return hashlib.md5(f"{event.source}_{event.currency}_{event.title}_{when}".encode("utf-8")).hexdigest()


def _has_real_actual(event: RawEvent) -> bool:
    return not is_placeholder_actual(event.actual)


class DeliveryFilter:
    def __init__(
        self,
        *,
        past_threshold_scheduler: timedelta = PAST_THRESHOLD_SCHEDULER,
        past_threshold_daily: timedelta = PAST_THRESHOLD_DAILY,
    ) -> None:
        self.past_threshold_scheduler = past_threshold_scheduler
        self.past_threshold_daily = past_threshold_daily

    def _issue(self, event: RawEvent, type_: str, message: str, **details) -> DataIssue:
        return DataIssue(
            source=event.source,
            type=type_,
            message=message,
            event_id=issue_event_id(event),
            details=details,
        )

    def _check(self, event: RawEvent, mode: FilterMode, now: datetime, for_scheduler: bool) -> DataIssue | None:
        if not (event.title or "").strip() or not (event.currency or "").strip():
            return self._issue(event, MISSING_REQUIRED_FIELD, "Event has no title or currency")

        instant = event.time_instant
        if instant is None:
            # the no-time channel needs these in the general/reminder views
            if mode in ("general", "reminder"):
                return None
            if mode == "ai_results" and _has_real_actual(event) and not is_empty(event.forecast):
                return None
            return self._issue(event, NO_TIME, f"Event has no valid time: {event.title}")

        if mode != "ai_results":
            threshold = self.past_threshold_scheduler
            if mode == "general" and not for_scheduler:
                threshold = self.past_threshold_daily
            age = now - instant
            if age > threshold and not _has_real_actual(event):
                return self._issue(
                    event,
                    PAST_TOO_FAR,
                    f"Event is too far in the past: {int(age.total_seconds() // 60)} minutes ago",
                    age_minutes=int(age.total_seconds() // 60),
                )

        if mode == "ai_forecast" and instant <= now:
            return self._issue(event, PAST_TOO_FAR, "Event is not in the future")

        if mode == "ai_results" and (not _has_real_actual(event) or is_empty(event.forecast)):
            return self._issue(
                event,
                MISSING_REQUIRED_FIELD,
                "Event is missing actual or forecast",
                has_actual=_has_real_actual(event),
                has_forecast=not is_empty(event.forecast),
            )
        return None

    def filter_for_delivery(
        self,
        events: Iterable[RawEvent],
        *,
        mode: FilterMode = "general",
        now: datetime,
        for_scheduler: bool = True,
    ) -> FilterResult:
        deliver: list[RawEvent] = []
        skipped: list[DataIssue] = []
        for ev in events:
            issue = self._check(ev, mode, now, for_scheduler)
            if issue is None:
                deliver.append(ev)
            else:
                log.debug("Filtered (%s) %s %r: %s", issue.type, ev.currency, ev.title, issue.message)
                skipped.append(issue)
        return FilterResult(deliver=deliver, skipped=skipped)


def title_similarity(a: str, b: str) -> float:
    return fuzz.token_set_ratio((a or "").lower(), (b or "").lower())


def check_cross_source_conflicts(events: Sequence[RawEvent]) -> list[DataIssue]:
    """Same release reported at different times by different sources."""
    by_currency: dict[str, list[RawEvent]] = {}
    for ev in events:
        by_currency.setdefault(ev.currency, []).append(ev)

    conflicts: list[DataIssue] = []
    for currency, group in by_currency.items():
        for a, b in combinations(group, 2):
            if a.source == b.source or a.time_instant is None or b.time_instant is None:
                continue
            if title_similarity(a.title, b.title) < TITLE_SIMILARITY_THRESHOLD:
                continue
            diff = abs(a.time_instant - b.time_instant)
            if diff <= CONFLICT_MIN_DIFF:
                continue
            conflicts.append(
                DataIssue(
                    source="Merge",
                    type=CONFLICT_BETWEEN_SOURCES,
                    message=f"Time conflict between {a.source} and {b.source} for {currency} {a.title!r}",
                    details={
                        "first": {"source": a.source, "title": a.title, "time": a.time_instant.isoformat()},
                        "second": {"source": b.source, "title": b.title, "time": b.time_instant.isoformat()},
                        "diff_minutes": int(diff.total_seconds() // 60),
                    },
                )
            )

    if conflicts:
        log.info("Found %d cross-source conflicts", len(conflicts))
    return conflicts
