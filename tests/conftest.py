"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pytest

from calendar_alerts.errors import DeliveryError, RecipientBlockedError
from calendar_alerts.models import SOURCE_FOREXFACTORY, AnalysisResult, NewsItem, RawEvent
from calendar_alerts.store import JsonStateStore

UTC = timezone.utc


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=UTC)


def create_test_event(
    title: str = "CPI m/m",
    *,
    currency: str = "USD",
    impact: str = "High",
    at: Optional[datetime] = None,
    time: Optional[str] = None,
    forecast: str = "0.3%",
    previous: str = "0.2%",
    actual: str = "—",
    source: str = SOURCE_FOREXFACTORY,
) -> RawEvent:
    """Build a RawEvent; `time` defaults to HH:MM of `at`, or Tentative when undated."""
    if time is None:
        time = at.strftime("%H:%M") if at is not None else "Tentative"
    return RawEvent(
        title=title,
        currency=currency,
        impact=impact,
        time=time,
        time_instant=at,
        forecast=forecast,
        previous=previous,
        actual=actual,
        source=source,
    )


class FakeTransport:
    """Records deliveries; recipients can be configured to block or fail."""

    def __init__(self) -> None:
        self.sent: list[tuple[int, str]] = []
        self.blocked: set[int] = set()
        self.failing: set[int] = set()

    async def send(self, recipient_id: int, text: str, **options) -> None:
        if recipient_id in self.blocked:
            raise RecipientBlockedError(recipient_id, "bot was blocked by the user")
        if recipient_id in self.failing:
            raise DeliveryError(recipient_id, "HTTP 500")
        self.sent.append((recipient_id, text))

    def texts_for(self, recipient_id: int) -> list[str]:
        return [text for rid, text in self.sent if rid == recipient_id]


class FakeAdapter:
    """In-memory source; optionally waits on a gate or raises."""

    def __init__(
        self,
        name: str,
        events: Optional[list[RawEvent]] = None,
        *,
        gate: Optional[asyncio.Event] = None,
        error: Optional[Exception] = None,
        tomorrow: Optional[list[RawEvent]] = None,
    ) -> None:
        self.name = name
        self.events = list(events or [])
        self.tomorrow = list(tomorrow or [])
        self.gate = gate
        self.error = error
        self.calls = 0

    async def fetch_today(self, now: Optional[datetime] = None) -> list[RawEvent]:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.events)

    async def fetch_tomorrow(self, now: Optional[datetime] = None) -> list[RawEvent]:
        return list(self.tomorrow)


class FakeAnalyzer:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.calls: list[str] = []
        self.day_calls: list[str] = []
        self.questions: list[tuple[str, Optional[str]]] = []

    async def score_event(self, text: str) -> AnalysisResult:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return AnalysisResult(
            score=7,
            sentiment="Pos",
            summary="Release beat expectations.",
            reasoning="Higher print -> hawkish repricing -> USD positive.",
            affected_pairs=("EURUSD",),
        )

    async def analyze_day(self, text: str) -> str:
        self.day_calls.append(text)
        if self.error is not None:
            raise self.error
        return "Key focus: EURUSD into the US CPI print."

    async def answer_question(self, question: str, context: Optional[str] = None) -> str:
        self.questions.append((question, context))
        if self.error is not None:
            raise self.error
        return "Trade the deviation from forecast, not the headline."


class FakeNewsFeed:
    def __init__(self, items: Optional[list[NewsItem]] = None) -> None:
        self.items = list(items or [])

    async def fetch_latest(self, now: Optional[datetime] = None) -> list[NewsItem]:
        return list(self.items)


@pytest.fixture
def store(tmp_path: Path) -> JsonStateStore:
    """Fresh JSON-backed store in a temp directory."""
    return JsonStateStore(str(tmp_path / "state.json"), default_timezone="UTC")


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
