import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta
from typing import Hashable, MutableMapping, Optional

import httpx
from cachetools import TTLCache

from calendar_alerts.errors import SourceFetchError
from calendar_alerts.models import RawEvent
from calendar_alerts.utils.time import now_utc, to_tz

log = logging.getLogger(__name__)

DEFAULT_SOURCE_TTL_SECONDS = 300


class SourceAdapter(ABC):
    """
    A calendar feed. Results are cached per page for a short TTL, so the
    scheduler and ad-hoc lookups within a few minutes hit the network once.

    fetch_today/fetch_tomorrow return a span of days around the target day
    in the feed's own timezone; recipients in other timezones still find
    their whole local day in it. The view builder cuts the exact window.
    """

    name: str = "source"
    tz_name: str = "UTC"
    span_days: int = 1

    def __init__(self, *, cache: Optional[MutableMapping] = None) -> None:
        self.cache: MutableMapping = cache if cache is not None else TTLCache(
            maxsize=32, ttl=DEFAULT_SOURCE_TTL_SECONDS
        )

    @abstractmethod
    async def _fetch_page(self, key: Hashable) -> list[RawEvent]:
        """Download and parse one page. Raise SourceFetchError on failure."""

    @abstractmethod
    def _page_keys(self, days: list[date]) -> list[Hashable]:
        """Which pages cover the given feed-local days."""

    async def _cached_page(self, key: Hashable) -> list[RawEvent]:
        hit = self.cache.get(key)
        if hit is not None:
            return hit
        try:
            events = await self._fetch_page(key)
        except httpx.HTTPError as ex:
            raise SourceFetchError(self.name, f"{type(ex).__name__}: {ex}") from ex
        self.cache[key] = events
        log.info("%s: parsed %d events for %s", self.name, len(events), key)
        return events

    async def fetch_span(self, center: date) -> list[RawEvent]:
        days = [center + timedelta(days=d) for d in range(-self.span_days, self.span_days + 1)]
        out: list[RawEvent] = []
        seen: set[Hashable] = set()
        for key in self._page_keys(days):
            if key in seen:
                continue
            seen.add(key)
            events = await self._cached_page(key)
            if key != center:
                # undated rows carry no day of their own; only the target day's page may contribute them
                events = [e for e in events if e.time_instant is not None]
            out.extend(events)
        return out

    def _local_today(self, now: Optional[datetime] = None) -> date:
        return to_tz(now or now_utc(), self.tz_name).date()

    async def fetch_today(self, now: Optional[datetime] = None) -> list[RawEvent]:
        return await self.fetch_span(self._local_today(now))

    async def fetch_tomorrow(self, now: Optional[datetime] = None) -> list[RawEvent]:
        return await self.fetch_span(self._local_today(now) + timedelta(days=1))
