from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Hashable

from bs4 import BeautifulSoup

from calendar_alerts.models import SOURCE_MYFXBOOK, RawEvent
from calendar_alerts.providers.base import SourceAdapter
from calendar_alerts.utils.http import HttpClient
from calendar_alerts.utils.time import UTC_TZ
from calendar_alerts.utils.values import EMPTY_MARK, normalize_value

log = logging.getLogger(__name__)

DAY_HDR_RE = re.compile(r"^(Monday|Tuesday|Wednesday|Thursday|Friday|Saturday|Sunday),\s+([A-Za-z]{3})\s+(\d{1,2}),\s+(\d{4})$")
DT_RE = re.compile(r"^([A-Za-z]{3})\s+(\d{1,2}),\s+(\d{2}):(\d{2})$")
# e.g. "59 min", "12h 59min", "1 day"
TIMELEFT_RE = re.compile(r"(\d+\s*day|\d+\s*h|\d+\s*min)", re.IGNORECASE)
CURRENCY_RE = re.compile(r"^([A-Z]{3})\s+(.+)$")
CODE_RE = re.compile(r"^[A-Z]{3}$")

MONTHS = {m: i for i, m in enumerate(("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"), 1)}
GRID_WORDS = {"All", "None", "Date", "Event", "Impact", "Previous", "Consensus", "Actual", "Time left"}
KEEP_IMPACTS = {"High", "Medium"}


def map_values(tokens: list[str]) -> tuple[str, str, str]:
    """
    Columns are Previous / Consensus / Actual, but many rows show fewer:
      - 3 tokens: previous, consensus, actual
      - 2 tokens: previous, actual (auctions)
      - 1 token: previous
    Returns (previous, forecast, actual).
    """
    if len(tokens) >= 3:
        return tokens[0], tokens[1], tokens[2]
    if len(tokens) == 2:
        return tokens[0], EMPTY_MARK, tokens[1]
    if len(tokens) == 1:
        return tokens[0], EMPTY_MARK, EMPTY_MARK
    return EMPTY_MARK, EMPTY_MARK, EMPTY_MARK


def parse_calendar_text(html: str) -> list[RawEvent]:
    """
    Parse the server-rendered calendar by its visible text stream:

      Monday, Jan 12, 2026
      Jan 12, 13:30
      USD  Core CPI (MoM)
      High
      0.3%  0.3%  0.4%

    Times on the page are UTC.
    """
    soup = BeautifulSoup(html, "lxml")
    lines = [ln.strip() for ln in soup.get_text("\n").splitlines() if ln.strip()]

    events: list[RawEvent] = []
    year: int | None = None
    i = 0
    while i < len(lines):
        m_day = DAY_HDR_RE.match(lines[i])
        if m_day:
            year = int(m_day.group(4))
            i += 1
            continue

        m_dt = DT_RE.match(lines[i])
        if not m_dt or year is None:
            i += 1
            continue

        mon_abbr, day_s, hh_s, mm_s = m_dt.groups()
        instant = None
        if mon_abbr in MONTHS:
            instant = datetime(year, MONTHS[mon_abbr], int(day_s), int(hh_s), int(mm_s), tzinfo=UTC_TZ)
        time_str = f"{hh_s}:{mm_s}"
        i += 1

        # optional "time left" token right after the timestamp
        if i < len(lines) and TIMELEFT_RE.search(lines[i]) and not CURRENCY_RE.match(lines[i]):
            i += 1
        if i >= len(lines):
            break

        m_cur = CURRENCY_RE.match(lines[i])
        if m_cur:
            currency, title = m_cur.group(1), m_cur.group(2)
            i += 1
        elif CODE_RE.match(lines[i]) and i + 1 < len(lines):
            # currency and title rendered in separate cells
            currency, title = lines[i], lines[i + 1]
            i += 2
        else:
            i += 1
            continue
        title = re.sub(r"\s+", " ", title).strip()

        impact = lines[i] if i < len(lines) else "Unknown"
        i += 1

        vals: list[str] = []
        while i < len(lines):
            if DAY_HDR_RE.match(lines[i]) or DT_RE.match(lines[i]):
                break
            if lines[i] not in GRID_WORDS:
                vals.append(lines[i])
            i += 1

        tokens: list[str] = []
        for v in vals:
            tokens.extend(t.strip() for t in re.split(r"\s{2,}|\t+", v) if t.strip())
        previous, forecast, actual = map_values(tokens)

        if impact not in KEEP_IMPACTS:
            continue

        events.append(
            RawEvent(
                title=title,
                currency=currency,
                impact=impact,
                time=time_str,
                time_instant=instant,
                forecast=forecast,
                previous=previous,
                actual=normalize_value(actual),
                source=SOURCE_MYFXBOOK,
            )
        )

    return events


class MyfxbookAdapter(SourceAdapter):
    """
    Scrapes the Myfxbook economic calendar.

    The page lists the whole current week in one response, so every day
    maps to the same cached page.
    """

    BASE_URL = "https://www.myfxbook.com/forex-economic-calendar"
    name = SOURCE_MYFXBOOK
    tz_name = "UTC"

    def __init__(self, http: HttpClient, **kwargs) -> None:
        super().__init__(**kwargs)
        self.http = http

    def _page_keys(self, days: list[date]) -> list[Hashable]:
        return ["calendar"]

    async def _fetch_page(self, key: Hashable) -> list[RawEvent]:
        html = await self.http.get_text(self.BASE_URL)
        return parse_calendar_text(html)
