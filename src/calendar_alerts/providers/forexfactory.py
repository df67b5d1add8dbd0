import logging
import re
from datetime import date, datetime
from typing import Hashable, Iterable, Optional
from zoneinfo import ZoneInfo

from bs4 import BeautifulSoup

from calendar_alerts.models import SOURCE_FOREXFACTORY, RawEvent
from calendar_alerts.providers.base import SourceAdapter
from calendar_alerts.utils.http import HttpClient
from calendar_alerts.utils.time import UTC_TZ
from calendar_alerts.utils.values import EMPTY_MARK, is_empty, is_special_time, normalize_value

log = logging.getLogger(__name__)

MONTHS = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")
CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})\s*(am|pm)?$", re.IGNORECASE)
# rows with no numbers are still worth announcing for these
TALK_RE = re.compile(r"Speech|Minutes|Statement|Press Conference|Policy Report", re.IGNORECASE)


def inherit_times(raw_times: Iterable[str]) -> list[str]:
    """
    The calendar prints a time only on the first row of a slot; following
    rows leave the cell blank. Fill blanks with the last real time seen.
    A Tentative/All Day row resets the carry so it never leaks forward.
    """
    last_known_time = EMPTY_MARK
    out: list[str] = []
    for raw in raw_times:
        t = (raw or "").strip()
        if is_empty(t):
            out.append(last_known_time)
        elif is_special_time(t):
            out.append(t)
            last_known_time = EMPTY_MARK
        else:
            out.append(t)
            last_known_time = t
    return out


def parse_clock(time_str: str) -> Optional[tuple[int, int]]:
    m = CLOCK_RE.match((time_str or "").strip())
    if not m:
        return None
    hh, mm, ampm = int(m.group(1)), int(m.group(2)), (m.group(3) or "").lower()
    if ampm:
        if not 1 <= hh <= 12:
            return None
        if ampm == "pm" and hh != 12:
            hh += 12
        elif ampm == "am" and hh == 12:
            hh = 0
    if hh > 23 or mm > 59:
        return None
    return hh, mm


def to_instant(time_str: str, day: date, tz_name: str) -> Optional[datetime]:
    """Feed-local clock time on `day` -> UTC instant, None for Tentative/All Day/garbage."""
    if is_special_time(time_str):
        return None
    clock = parse_clock(time_str)
    if clock is None:
        return None
    local = datetime(day.year, day.month, day.day, clock[0], clock[1], tzinfo=ZoneInfo(tz_name))
    return local.astimezone(UTC_TZ)


def impact_from_class(css_class: str) -> str:
    c = (css_class or "").lower()
    if "icon--ff-impact-red" in c:
        return "High"
    if "icon--ff-impact-ora" in c:
        return "Medium"
    return "Low"


def _cell(tr, selector: str) -> str:
    el = tr.select_one(selector)
    return re.sub(r"\s+", " ", el.get_text(" ", strip=True)) if el else ""


def parse_calendar_html(html: str, day: date, tz_name: str) -> list[RawEvent]:
    soup = BeautifulSoup(html, "lxml")
    rows = [tr for tr in soup.select("table.calendar__table tr") if len(tr.find_all("td")) >= 5]
    times = inherit_times(_cell(tr, ".calendar__time") for tr in rows)

    events: list[RawEvent] = []
    dropped_low = 0
    for tr, time_str in zip(rows, times):
        currency = _cell(tr, ".calendar__currency").upper()
        title = _cell(tr, ".calendar__event-title")
        if not title or not currency or currency in ("CURRENCY", "ALL"):
            continue

        impact_el = tr.select_one(".calendar__impact span")
        impact = impact_from_class(" ".join(impact_el.get("class", [])) if impact_el else "")
        if impact == "Low":
            dropped_low += 1
            continue

        actual = normalize_value(_cell(tr, ".calendar__actual"))
        forecast = _cell(tr, ".calendar__forecast") or EMPTY_MARK
        previous = _cell(tr, ".calendar__previous") or EMPTY_MARK
        if is_empty(actual) and is_empty(forecast) and is_empty(previous) and not TALK_RE.search(title):
            continue

        events.append(
            RawEvent(
                title=title,
                currency=currency,
                impact=impact,
                time=time_str,
                time_instant=to_instant(time_str, day, tz_name),
                forecast=forecast,
                previous=previous,
                actual=actual,
                source=SOURCE_FOREXFACTORY,
            )
        )

    log.debug("ForexFactory %s: %d rows, %d kept, %d low impact", day, len(rows), len(events), dropped_low)
    return events


class ForexFactoryAdapter(SourceAdapter):
    """
    Scrapes the ForexFactory day calendar.

    Times on the page are rendered in the site's session timezone
    (America/New_York for anonymous visitors); configure `tz_name` if that differs.
    """

    BASE_URL = "https://www.forexfactory.com/calendar"
    name = SOURCE_FOREXFACTORY

    def __init__(self, http: HttpClient, *, tz_name: str = "America/New_York", **kwargs) -> None:
        super().__init__(**kwargs)
        self.http = http
        self.tz_name = tz_name

    def _page_keys(self, days: list[date]) -> list[Hashable]:
        return list(days)

    @staticmethod
    def day_param(day: date) -> str:
        # e.g. "jan15.2026"
        return f"{MONTHS[day.month - 1]}{day.day}.{day.year}"

    async def _fetch_page(self, key: Hashable) -> list[RawEvent]:
        html = await self.http.get_text(self.BASE_URL, params={"day": self.day_param(key)})
        return parse_calendar_html(html, key, self.tz_name)
