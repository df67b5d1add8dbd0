"""
The notification pass.

Every tick fetches each source once, then walks recipients in fixed-size
concurrent batches. For each recipient the pass builds their view of the
day and offers it to every channel in turn (no-time, reminders, results,
daily digest and its AI overview, news). A channel sends only when its
window is open and the store has no mark for the (kind, recipient,
fingerprint) key, and marks the key only after the transport accepted the
message.

Ticks never overlap: a tick that finds the previous one still running is
skipped and counted.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Sequence

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from calendar_alerts.analysis import (
    Analyzer,
    daily_analysis_text,
    event_analysis_text,
    group_analysis_text,
    news_analysis_text,
    question_context,
)
from calendar_alerts.dedup import DEFAULT_PRECEDENCE
from calendar_alerts.errors import (
    AnalysisError,
    AnalysisRateLimited,
    DeliveryError,
    RecipientBlockedError,
)
from calendar_alerts.grouping import group_events
from calendar_alerts.models import (
    AnalysisResult,
    EventGroup,
    NewsItem,
    NotificationKind,
    RawEvent,
    Recipient,
    RecipientSettings,
    TimelineItem,
)
from calendar_alerts.notifications import (
    NotificationWindows,
    daily_due,
    daily_fingerprint,
    event_fingerprint,
    group_fingerprint,
    is_quiet_hours,
    mark_key,
    news_fingerprint,
    reminder_due,
    result_due,
)
from calendar_alerts.providers.base import SourceAdapter
from calendar_alerts.providers.news import NewsFeed, mentions_currencies
from calendar_alerts.quality import DeliveryFilter
from calendar_alerts.store import StateStore
from calendar_alerts.transport import Transport
from calendar_alerts.utils.fmt import (
    format_daily_digest,
    format_day_analysis,
    format_event_message,
    format_group_message,
    format_news_message,
)
from calendar_alerts.utils.time import now_utc
from calendar_alerts.views import Day, RecipientViewBuilder, SourceSnapshot, fetch_snapshot

log = logging.getLogger(__name__)

TextBuilder = Callable[[], Awaitable[str]]


@dataclass
class TickReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    recipients: int = 0
    sent: int = 0
    failed: int = 0
    errors: int = 0
    by_kind: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict:
        raw = asdict(self)
        raw["started_at"] = self.started_at.isoformat()
        raw["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return raw


class _RecipientStopped(Exception):
    """Internal: nothing more can be delivered to this recipient this tick."""


class NotificationScheduler:
    def __init__(
        self,
        *,
        adapters: Sequence[SourceAdapter],
        store: StateStore,
        transport: Transport,
        windows: Optional[NotificationWindows] = None,
        view_builder: Optional[RecipientViewBuilder] = None,
        delivery_filter: Optional[DeliveryFilter] = None,
        analyzer: Optional[Analyzer] = None,
        news_feed: Optional[NewsFeed] = None,
        batch_size: int = 40,
        batch_pause_seconds: float = 0.15,
        startup_delay_seconds: int = 5,
        retention_days: int = 1,
        precedence: Sequence[str] = DEFAULT_PRECEDENCE,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.adapters = list(adapters)
        self.store = store
        self.transport = transport
        self.windows = windows or NotificationWindows()
        self.views = view_builder or RecipientViewBuilder()
        self.delivery_filter = delivery_filter or DeliveryFilter()
        self.analyzer = analyzer
        self.news_feed = news_feed
        self.batch_size = batch_size
        self.batch_pause_seconds = batch_pause_seconds
        self.startup_delay_seconds = startup_delay_seconds
        self.retention_days = retention_days
        self.precedence = tuple(precedence)

        self.sched = AsyncIOScheduler(timezone="UTC")
        self._lock = asyncio.Lock()
        # recipients already reported as blocked; warned about once
        self._blocked: set[int] = set()
        self._report: Optional[TickReport] = None

        self.skipped_busy = 0
        self.last_report: Optional[TickReport] = None

    # lifecycle

    def start(self) -> None:
        self.sched.add_job(
            self.run_tick,
            "interval",
            minutes=self.windows.tick_minutes,
            id="notification_tick",
            # overlapping runs reach run_tick, which skips and counts them
            max_instances=2,
            coalesce=True,
            replace_existing=True,
        )

        # first pass shortly after boot
        self.sched.add_job(
            self.run_tick,
            "date",
            run_date=now_utc() + timedelta(seconds=self.startup_delay_seconds),
            id="notification_tick_boot",
            replace_existing=True,
        )

        self.sched.add_job(
            self.prune_marks,
            CronTrigger(hour=3, minute=30),
            id="prune_marks",
            replace_existing=True,
        )

        self.sched.start()
        log.info("Scheduler started: tick every %d min, batch size %d", self.windows.tick_minutes, self.batch_size)

    def shutdown(self) -> None:
        if self.sched.running:
            self.sched.shutdown(wait=False)

    def status(self) -> dict:
        return {
            "running": self._lock.locked(),
            "skipped_busy": self.skipped_busy,
            "last_tick": self.last_report.as_dict() if self.last_report else None,
        }

    async def _preview_events(
        self, settings: RecipientSettings, now: datetime, day: Day
    ) -> list[RawEvent]:
        snapshot = await fetch_snapshot(
            self.adapters, include_tomorrow=day == "tomorrow", precedence=self.precedence, now=now
        )
        view = self.views.build(snapshot, settings, now=now, day=day)
        return self.delivery_filter.filter_for_delivery(view, mode="general", now=now, for_scheduler=False).deliver

    async def preview_daily(self, recipient_id: int, now: Optional[datetime] = None, *, day: Day = "today") -> str:
        """Digest for today or tomorrow on demand; not marked, so the scheduled digest still goes out."""
        now = now or now_utc()
        settings = self.store.get_recipient_settings(recipient_id)
        events = await self._preview_events(settings, now, day)
        offset = timedelta(days=1) if day == "tomorrow" else timedelta(0)
        label = daily_fingerprint(now + offset, settings.timezone)
        if not events:
            return f"📅 Nothing scheduled for {label} in {', '.join(sorted(settings.monitored_currencies))}."
        return format_daily_digest(self._timelines(events, settings), settings.timezone, label)

    async def ask(self, recipient_id: int, question: str, now: Optional[datetime] = None) -> str:
        """Answer a trader question with up to five of today's releases as context."""
        if self.analyzer is None:
            raise AnalysisError("AI analysis is not configured")
        now = now or now_utc()
        settings = self.store.get_recipient_settings(recipient_id)
        events = await self._preview_events(settings, now, "today")
        return await self.analyzer.answer_question(question, question_context(events, settings.timezone))

    async def prune_marks(self) -> None:
        try:
            self.store.prune_older_than_days(self.retention_days)
        except Exception as ex:
            log.exception("prune_marks failed: %s", ex)

    # the pass

    async def run_tick(self, now: Optional[datetime] = None) -> Optional[TickReport]:
        if self._lock.locked():
            self.skipped_busy += 1
            log.warning("Previous tick still running; skipping (skipped so far: %d)", self.skipped_busy)
            return None

        async with self._lock:
            now = now or now_utc()
            report = TickReport(started_at=now)
            self._report = report
            try:
                snapshot = await fetch_snapshot(self.adapters, precedence=self.precedence, now=now)
                news = await self._fetch_news(now)

                recipients = self.store.get_recipients()
                report.recipients = len(recipients)
                for start in range(0, len(recipients), self.batch_size):
                    batch = recipients[start : start + self.batch_size]
                    results = await asyncio.gather(
                        *(self._process_recipient(r, snapshot, news, now) for r in batch),
                        return_exceptions=True,
                    )
                    for recipient, res in zip(batch, results):
                        if isinstance(res, BaseException):
                            report.errors += 1
                            log.error("Recipient %s crashed outside its guard: %r", recipient.recipient_id, res)
                    if start + self.batch_size < len(recipients):
                        await asyncio.sleep(self.batch_pause_seconds)
            except Exception as ex:
                log.exception("Tick failed: %s", ex)
                report.errors += 1
            finally:
                report.finished_at = now_utc()
                self.last_report = report
                self._report = None

            log.info(
                "Tick done: recipients=%d sent=%d failed=%d errors=%d",
                report.recipients, report.sent, report.failed, report.errors,
            )
            return report

    async def _fetch_news(self, now: datetime) -> list[NewsItem]:
        if self.news_feed is None:
            return []
        try:
            return await self.news_feed.fetch_latest(now)
        except Exception as ex:
            log.warning("News fetch failed: %s", ex)
            return []

    async def _process_recipient(
        self,
        recipient: Recipient,
        snapshot: SourceSnapshot,
        news: list[NewsItem],
        now: datetime,
    ) -> None:
        rid = recipient.recipient_id
        try:
            settings = self.store.get_recipient_settings(rid)
            view = self.views.build(snapshot, settings, now=now)
            events = self.delivery_filter.filter_for_delivery(view, mode="general", now=now, for_scheduler=True).deliver

            quiet = settings.quiet_hours_enabled and is_quiet_hours(now, settings.timezone, self.windows)
            if quiet:
                log.debug("Quiet hours for %s; only the daily digest may go out", rid)
            else:
                await self._send_no_time(rid, settings, events, now)
                timelines = self._timelines(events, settings)
                await self._send_reminders(rid, settings, timelines, now)
                await self._send_results(rid, settings, timelines, now)

            await self._send_daily(rid, settings, view, now)

            if settings.rss_enabled and not quiet:
                await self._send_news(rid, settings, news)
        except _RecipientStopped:
            return
        except Exception as ex:
            if self._report is not None:
                self._report.errors += 1
            log.exception("Processing recipient %s failed: %s", rid, ex)

    @staticmethod
    def _timelines(events: list[RawEvent], settings: RecipientSettings) -> dict[str, list[TimelineItem]]:
        # grouping never crosses sources
        return {src: group_events([e for e in events if e.source == src]) for src in settings.sources()}

    # delivery

    async def _dispatch(
        self,
        rid: int,
        kind: NotificationKind,
        key: str,
        build_text: TextBuilder,
        *,
        also_mark: Sequence[str] = (),
    ) -> bool:
        if self.store.has_sent(key):
            return False

        try:
            text = await build_text()
        except AnalysisRateLimited as ex:
            log.warning("Skipping %s for %s: analysis rate limited (%s)", kind.value, rid, ex)
            return False
        except AnalysisError as ex:
            log.warning("Skipping %s for %s: analysis failed (%s)", kind.value, rid, ex)
            return False

        try:
            await self.transport.send(rid, text)
        except RecipientBlockedError as ex:
            if rid not in self._blocked:
                self._blocked.add(rid)
                log.warning("Recipient %s is unreachable, not marking: %s", rid, ex)
            raise _RecipientStopped() from ex
        except DeliveryError as ex:
            if self._report is not None:
                self._report.failed += 1
            log.error("Delivery of %s to %s failed: %s", kind.value, rid, ex)
            return False

        self._blocked.discard(rid)
        for k in (key, *also_mark):
            self.store.mark_sent(k)
        if self._report is not None:
            self._report.sent += 1
            self._report.by_kind[kind.value] = self._report.by_kind.get(kind.value, 0) + 1
        log.info("Sent %s to %s (%s)", kind.value, rid, key)
        return True

    async def _analyze(self, text: str) -> Optional[AnalysisResult]:
        if self.analyzer is None:
            return None
        return await self.analyzer.score_event(text)

    async def _send_no_time(self, rid: int, settings: RecipientSettings, events: list[RawEvent], now: datetime) -> None:
        day = daily_fingerprint(now, settings.timezone)
        for ev in events:
            if ev.time_instant is not None:
                continue
            key = mark_key(NotificationKind.EVENT, rid, f"{day}_{event_fingerprint(ev)}")

            async def build(ev=ev) -> str:
                analysis = await self._analyze(event_analysis_text(ev))
                return format_event_message(ev, settings.timezone, kind="event", analysis=analysis)

            await self._dispatch(rid, NotificationKind.EVENT, key, build)

    async def _send_group(
        self,
        rid: int,
        settings: RecipientSettings,
        group: EventGroup,
        members: Sequence[RawEvent],
        *,
        group_kind: NotificationKind,
        member_kind: NotificationKind,
        send_single: Callable[[int, RecipientSettings, RawEvent, str], Awaitable[None]],
        build_text: TextBuilder,
    ) -> None:
        member_keys = [mark_key(member_kind, rid, event_fingerprint(e)) for e in members]
        group_key = mark_key(group_kind, rid, group_fingerprint(group))

        # once any member went out, the rest follow one by one
        if self.store.has_sent(group_key) or any(self.store.has_sent(k) for k in member_keys):
            for ev, member_key in zip(members, member_keys):
                if not self.store.has_sent(member_key):
                    await send_single(rid, settings, ev, member_key)
            return

        await self._dispatch(rid, group_kind, group_key, build_text, also_mark=member_keys)

    async def _send_reminders(self, rid: int, settings: RecipientSettings, timelines: dict, now: datetime) -> None:
        lead = self.windows.reminder_lead_minutes
        for items in timelines.values():
            for item in items:
                if not reminder_due(item.time_instant, now, self.windows):
                    continue

                if isinstance(item, EventGroup):
                    async def build(g=item) -> str:
                        analysis = await self._analyze(group_analysis_text(g))
                        return format_group_message(g, settings.timezone, kind="reminder", lead_minutes=lead, analysis=analysis)

                    await self._send_group(
                        rid, settings, item, item.events,
                        group_kind=NotificationKind.GROUP_REMINDER,
                        member_kind=NotificationKind.REMINDER,
                        send_single=self._send_single_reminder,
                        build_text=build,
                    )
                    continue

                key = mark_key(NotificationKind.REMINDER, rid, event_fingerprint(item))
                await self._send_single_reminder(rid, settings, item, key)

    async def _send_single_reminder(self, rid: int, settings: RecipientSettings, ev: RawEvent, key: str) -> None:
        lead = self.windows.reminder_lead_minutes

        async def build() -> str:
            analysis = await self._analyze(event_analysis_text(ev))
            return format_event_message(ev, settings.timezone, kind="reminder", lead_minutes=lead, analysis=analysis)

        await self._dispatch(rid, NotificationKind.REMINDER, key, build)

    async def _send_results(self, rid: int, settings: RecipientSettings, timelines: dict, now: datetime) -> None:
        for items in timelines.values():
            for item in items:
                if isinstance(item, EventGroup):
                    due = [e for e in item.events if result_due(e, now, self.windows)]
                    if not due:
                        continue

                    async def build(g=item) -> str:
                        analysis = await self._analyze(group_analysis_text(g))
                        return format_group_message(g, settings.timezone, kind="result", analysis=analysis)

                    await self._send_group(
                        rid, settings, item, due,
                        group_kind=NotificationKind.GROUP_RESULT,
                        member_kind=NotificationKind.RESULT,
                        send_single=self._send_single_result,
                        build_text=build,
                    )
                    continue

                if result_due(item, now, self.windows):
                    key = mark_key(NotificationKind.RESULT, rid, event_fingerprint(item))
                    await self._send_single_result(rid, settings, item, key)

    async def _send_single_result(self, rid: int, settings: RecipientSettings, ev: RawEvent, key: str) -> None:
        async def build() -> str:
            analysis = await self._analyze(event_analysis_text(ev))
            return format_event_message(ev, settings.timezone, kind="result", analysis=analysis)

        await self._dispatch(rid, NotificationKind.RESULT, key, build)

    async def _send_daily(self, rid: int, settings: RecipientSettings, view: list[RawEvent], now: datetime) -> None:
        if not daily_due(now, settings.timezone, self.windows):
            return
        day = daily_fingerprint(now, settings.timezone)
        key = mark_key(NotificationKind.DAILY, rid, day)
        analysis_key = mark_key(NotificationKind.DAILY_ANALYSIS, rid, day)
        if self.store.has_sent(key) and (self.analyzer is None or self.store.has_sent(analysis_key)):
            return

        events = self.delivery_filter.filter_for_delivery(view, mode="general", now=now, for_scheduler=False).deliver
        if not events:
            log.debug("Nothing scheduled today for %s; no digest", rid)
            return
        timelines = self._timelines(events, settings)

        async def build() -> str:
            return format_daily_digest(timelines, settings.timezone, day)

        await self._dispatch(rid, NotificationKind.DAILY, key, build)

        # the overview follows its digest, never precedes it
        if self.analyzer is None or not self.store.has_sent(key):
            return

        async def build_overview() -> str:
            overview = await self.analyzer.analyze_day(daily_analysis_text(events, settings.timezone))
            return format_day_analysis(day, overview)

        await self._dispatch(rid, NotificationKind.DAILY_ANALYSIS, analysis_key, build_overview)

    async def _send_news(self, rid: int, settings: RecipientSettings, news: list[NewsItem]) -> None:
        for item in news:
            if not mentions_currencies(item, settings.monitored_currencies):
                continue
            key = mark_key(NotificationKind.RSS, rid, news_fingerprint(item))

            async def build(it=item) -> str:
                analysis = await self._analyze(news_analysis_text(it))
                return format_news_message(it, analysis=analysis)

            await self._dispatch(rid, NotificationKind.RSS, key, build)
