import logging
import re
from datetime import datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Iterable, Optional, Sequence

import httpx
from bs4 import BeautifulSoup

from calendar_alerts.models import NewsItem
from calendar_alerts.utils.http import HttpClient
from calendar_alerts.utils.time import UTC_TZ, now_utc

log = logging.getLogger(__name__)

DEFAULT_FEED_URL = "https://www.fxstreet.com/rss/news"
DEFAULT_KEYWORDS = (
    "Breaking", "Central Bank", "Fed", "ECB", "BOE", "BOJ", "RBNZ",
    "USD", "EUR", "GBP", "JPY", "CAD", "AUD", "NZD", "CHF",
    "Gold", "XAU", "Bitcoin", "BTC", "Crypto", "Oil", "Crude", "WTI", "Brent",
)
SUMMARY_MAX_LEN = 500
CURRENCY_CODE_RE = re.compile(r"\b(USD|EUR|GBP|JPY|CAD|AUD|NZD|CHF|CNY)\b")


def parse_pubdate(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        dt = parsedate_to_datetime(raw.strip())
    except (TypeError, ValueError):
        try:
            dt = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC_TZ)
    return dt.astimezone(UTC_TZ)


def _clean(text: str) -> str:
    # descriptions often carry escaped HTML
    plain = BeautifulSoup(text or "", "lxml").get_text(" ", strip=True)
    return re.sub(r"\s+", " ", plain).strip()


def parse_feed(xml: str, *, source: str) -> list[NewsItem]:
    soup = BeautifulSoup(xml, "xml")
    items: list[NewsItem] = []
    for node in soup.find_all("item"):
        title = _clean(node.title.get_text() if node.title else "")
        if not title:
            continue
        link = node.link.get_text(strip=True) if node.link else ""
        desc = node.find("description")
        summary = _clean(desc.get_text() if desc else "")
        if len(summary) > SUMMARY_MAX_LEN:
            summary = summary[: SUMMARY_MAX_LEN - 1].rstrip() + "…"
        pub = node.find("pubDate")
        items.append(
            NewsItem(
                title=title,
                link=link,
                summary=summary,
                source=source,
                published=parse_pubdate(pub.get_text() if pub else None),
            )
        )
    return items


def mentions_currencies(item: NewsItem, currencies: Iterable[str]) -> bool:
    """Items naming no currency at all are relevant to everyone."""
    named = set(CURRENCY_CODE_RE.findall(f"{item.title} {item.summary}".upper()))
    if not named:
        return True
    return bool(named & {c.upper() for c in currencies})


class NewsFeed:
    def __init__(
        self,
        http: HttpClient,
        *,
        url: str = DEFAULT_FEED_URL,
        keywords: Sequence[str] = DEFAULT_KEYWORDS,
        window_minutes: int = 10,
        source: str = "FXStreet",
    ) -> None:
        self.http = http
        self.url = url
        self.keywords = tuple(k.upper() for k in keywords)
        self.window = timedelta(minutes=window_minutes)
        self.source = source

    def _matches(self, item: NewsItem) -> bool:
        haystack = f"{item.title} {item.summary}".upper()
        return any(k in haystack for k in self.keywords)

    def select(self, items: Iterable[NewsItem], now: datetime) -> list[NewsItem]:
        threshold = now - self.window
        return [
            it for it in items
            if it.published is not None and threshold <= it.published <= now and self._matches(it)
        ]

    async def fetch_latest(self, now: Optional[datetime] = None) -> list[NewsItem]:
        now = now or now_utc()
        try:
            xml = await self.http.get_text(self.url)
        except httpx.HTTPError as ex:
            log.warning("News feed %s unavailable: %s", self.url, ex)
            return []
        latest = self.select(parse_feed(xml, source=self.source), now)
        log.info("News feed: %d fresh items", len(latest))
        return latest
