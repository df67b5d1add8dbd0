"""
Shared per-tick snapshot of every source and the per-recipient view over it.

Sources are fetched once per scheduling pass. Each recipient then gets the
slice that matters to them: their local calendar day, their chosen source(s),
their currencies and impact preference. Filtering by (source, day, timezone)
is identical for every recipient sharing a timezone, so that step is cached
for a short TTL.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Mapping, MutableMapping, Sequence

from cachetools import TTLCache

from calendar_alerts.dedup import DEFAULT_PRECEDENCE, dedupe
from calendar_alerts.models import RawEvent, RecipientSettings
from calendar_alerts.providers.base import SourceAdapter
from calendar_alerts.quality import check_cross_source_conflicts
from calendar_alerts.utils.time import day_bounds, now_utc

log = logging.getLogger(__name__)

Day = Literal["today", "tomorrow"]

DEFAULT_VIEW_TTL_SECONDS = 120


@dataclass
class SourceSnapshot:
    fetched_at: datetime
    # source name -> deduplicated events
    today: dict[str, list[RawEvent]] = field(default_factory=dict)
    tomorrow: dict[str, list[RawEvent]] = field(default_factory=dict)

    def events(self, source: str, day: Day) -> list[RawEvent]:
        bucket = self.today if day == "today" else self.tomorrow
        return bucket.get(source, [])


async def _safe_fetch(adapter: SourceAdapter, day: Day, now: datetime) -> list[RawEvent]:
    try:
        if day == "today":
            return await adapter.fetch_today(now)
        return await adapter.fetch_tomorrow(now)
    except Exception as ex:
        # a broken feed only means fewer events this tick
        log.warning("Fetch %s/%s failed: %s", adapter.name, day, ex)
        return []


async def fetch_snapshot(
    adapters: Sequence[SourceAdapter],
    *,
    include_tomorrow: bool = False,
    precedence: Sequence[str] = DEFAULT_PRECEDENCE,
    now: datetime | None = None,
) -> SourceSnapshot:
    snapshot = SourceSnapshot(fetched_at=now or now_utc())
    days: list[Day] = ["today", "tomorrow"] if include_tomorrow else ["today"]

    for day in days:
        raw = await asyncio.gather(*(_safe_fetch(a, day, snapshot.fetched_at) for a in adapters))
        bucket = snapshot.today if day == "today" else snapshot.tomorrow
        for adapter, events in zip(adapters, raw):
            bucket[adapter.name] = dedupe(events, precedence)

        populated = [events for events in bucket.values() if events]
        if len(populated) > 1:
            conflicts = check_cross_source_conflicts([e for events in populated for e in events])
            for issue in conflicts:
                log.info("Cross-source conflict: %s", issue.message)

    log.info(
        "Snapshot fetched: %s",
        ", ".join(f"{name}={len(evs)}" for name, evs in snapshot.today.items()) or "no sources",
    )
    return snapshot


class RecipientViewBuilder:
    def __init__(self, cache: MutableMapping | None = None) -> None:
        # keyed by (source, day, timezone, local date, snapshot time)
        self.cache: MutableMapping = cache if cache is not None else TTLCache(
            maxsize=512, ttl=DEFAULT_VIEW_TTL_SECONDS
        )

    def _day_slice(self, snapshot: SourceSnapshot, source: str, day: Day, tz_name: str, now: datetime) -> list[RawEvent]:
        start, end = day_bounds(now, tz_name, offset_days=1 if day == "tomorrow" else 0)
        key = (source, day, tz_name, start.date().isoformat(), snapshot.fetched_at.isoformat())
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        # undated events (All Day, Tentative) stay: they feed the no-time channel
        sliced = [
            e
            for e in snapshot.events(source, day)
            if e.time_instant is None or start <= e.time_instant < end
        ]
        self.cache[key] = sliced
        return sliced

    def build(
        self,
        snapshot: SourceSnapshot,
        settings: RecipientSettings,
        *,
        day: Day = "today",
        now: datetime | None = None,
    ) -> list[RawEvent]:
        now = now or snapshot.fetched_at
        out: list[RawEvent] = []
        for source in settings.sources():
            out.extend(self._day_slice(snapshot, source, day, settings.timezone, now))

        currencies = settings.monitored_currencies
        return [
            e
            for e in out
            if (not currencies or e.currency in currencies) and settings.allows_impact(e.impact)
        ]

    def clear(self) -> None:
        self.cache.clear()


def snapshot_from(events_by_source: Mapping[str, list[RawEvent]], fetched_at: datetime) -> SourceSnapshot:
    """Build a snapshot from already-fetched lists (dedupes each source)."""
    return SourceSnapshot(
        fetched_at=fetched_at,
        today={name: dedupe(evs) for name, evs in events_by_source.items()},
    )
