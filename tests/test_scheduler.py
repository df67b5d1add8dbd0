"""Tests for the notification pass."""

import asyncio
import logging
from datetime import timedelta

import pytest

from calendar_alerts.errors import AnalysisError, AnalysisRateLimited
from calendar_alerts.models import SOURCE_FOREXFACTORY, SOURCE_MYFXBOOK, NewsItem, NotificationKind, RecipientSettings
from calendar_alerts.notifications import event_fingerprint, mark_key
from calendar_alerts.scheduler import NotificationScheduler
from calendar_alerts.utils.time import now_utc
from tests.conftest import FakeAdapter, FakeAnalyzer, FakeNewsFeed, create_test_event, utc

RELEASE = utc(2026, 3, 10, 12, 30)


def make_scheduler(store, transport, events=(), *, mfb_events=(), **kwargs) -> NotificationScheduler:
    adapters = [
        FakeAdapter(SOURCE_FOREXFACTORY, list(events)),
        FakeAdapter(SOURCE_MYFXBOOK, list(mfb_events)),
    ]
    kwargs.setdefault("batch_pause_seconds", 0)
    return NotificationScheduler(adapters=adapters, store=store, transport=transport, **kwargs)


def nfp_release(actual: str = "—") -> list:
    return [
        create_test_event("Non-Farm Employment Change", at=RELEASE, forecast="160K", actual=actual),
        create_test_event("Unemployment Rate", at=RELEASE, forecast="4.1%"),
        create_test_event("Average Hourly Earnings m/m", at=RELEASE, impact="Medium", forecast="0.3%"),
    ]


@pytest.mark.asyncio
async def test_reminder_sent_once_across_ticks(store, transport) -> None:
    """Test two ticks inside one reminder window deliver a single reminder."""
    store.upsert_recipient(1)
    event = create_test_event(at=RELEASE)
    scheduler = make_scheduler(store, transport, [event])

    first = await scheduler.run_tick(utc(2026, 3, 10, 12, 15))
    await scheduler.run_tick(utc(2026, 3, 10, 12, 18))

    texts = transport.texts_for(1)
    assert len(texts) == 1
    assert "Starting in 15 min" in texts[0]
    assert store.has_sent(mark_key(NotificationKind.REMINDER, 1, event_fingerprint(event)))
    assert first.sent == 1
    assert first.by_kind == {"reminder": 1}


@pytest.mark.asyncio
async def test_nothing_outside_windows(store, transport) -> None:
    """Test a tick before the reminder window sends nothing."""
    store.upsert_recipient(1)
    scheduler = make_scheduler(store, transport, [create_test_event(at=RELEASE)])

    await scheduler.run_tick(utc(2026, 3, 10, 12, 0))

    assert transport.sent == []


@pytest.mark.asyncio
async def test_quiet_hours_suppress_alerts(store, transport) -> None:
    """Test reminders, results, undated events and news wait out quiet hours unless the recipient opted out."""
    store.upsert_recipient(1, settings=RecipientSettings(timezone="UTC"))
    store.upsert_recipient(2, settings=RecipientSettings(timezone="UTC", quiet_hours_enabled=False))
    news = NewsItem(title="USD slides", link="https://x/1", summary="", source="FXStreet", published=utc(2026, 3, 10, 23, 28))
    scheduler = make_scheduler(
        store,
        transport,
        [
            create_test_event("Trade Balance", at=utc(2026, 3, 10, 23, 45)),
            create_test_event("Current Account", at=utc(2026, 3, 10, 23, 10), actual="-1.2B"),
            create_test_event("FOMC Member Speaks", time="Tentative"),
        ],
        news_feed=FakeNewsFeed([news]),
    )

    await scheduler.run_tick(utc(2026, 3, 10, 23, 30))

    assert transport.texts_for(1) == []
    texts = transport.texts_for(2)
    assert len(texts) == 4
    assert any("Starting in 15 min" in t and "Trade Balance" in t for t in texts)
    assert any("Result" in t and "-1.2B" in t for t in texts)
    assert any("time not fixed" in t for t in texts)
    assert any("USD slides" in t for t in texts)


@pytest.mark.asyncio
async def test_group_reminder_marks_members(store, transport) -> None:
    """Test a group reminder is one message and covers each member."""
    store.upsert_recipient(1)
    events = nfp_release()
    scheduler = make_scheduler(store, transport, events)

    await scheduler.run_tick(utc(2026, 3, 10, 12, 15))

    texts = transport.texts_for(1)
    assert len(texts) == 1
    assert "3 releases" in texts[0]
    for ev in events:
        assert store.has_sent(mark_key(NotificationKind.REMINDER, 1, event_fingerprint(ev)))


@pytest.mark.asyncio
async def test_late_group_member_goes_out_alone(store, transport) -> None:
    """Test a release joining an announced group gets its own reminder."""
    store.upsert_recipient(1)
    scheduler = make_scheduler(store, transport, nfp_release())
    await scheduler.run_tick(utc(2026, 3, 10, 12, 15))

    scheduler.adapters[0].events.append(create_test_event("Participation Rate", at=RELEASE, forecast="62.5%"))
    await scheduler.run_tick(utc(2026, 3, 10, 12, 18))

    texts = transport.texts_for(1)
    assert len(texts) == 2
    assert "Participation Rate" in texts[1]
    assert "Unemployment Rate" not in texts[1]


@pytest.mark.asyncio
async def test_group_reminder_then_group_result(store, transport) -> None:
    """Test the jobs report: one reminder before release, one result once NFP prints."""
    store.upsert_recipient(1)
    scheduler = make_scheduler(store, transport, nfp_release())

    await scheduler.run_tick(utc(2026, 3, 10, 12, 15))
    scheduler.adapters[0].events = nfp_release(actual="150K")
    await scheduler.run_tick(utc(2026, 3, 10, 12, 31))
    await scheduler.run_tick(utc(2026, 3, 10, 12, 34))

    texts = transport.texts_for(1)
    assert len(texts) == 2
    assert "Starting in 15 min" in texts[0]
    assert "Result" in texts[1]
    assert "150K" in texts[1]


@pytest.mark.asyncio
async def test_single_result(store, transport) -> None:
    """Test a published actual produces one result message."""
    store.upsert_recipient(1)
    scheduler = make_scheduler(store, transport, [create_test_event(at=RELEASE, actual="0.4%")])

    await scheduler.run_tick(utc(2026, 3, 10, 12, 31))
    await scheduler.run_tick(utc(2026, 3, 10, 12, 34))

    texts = transport.texts_for(1)
    assert len(texts) == 1
    assert "Actual: `0.4%`" in texts[0]


@pytest.mark.asyncio
async def test_no_time_event_sent_once_per_day(store, transport) -> None:
    """Test undated events are announced once per local day."""
    store.upsert_recipient(1)
    scheduler = make_scheduler(store, transport, [create_test_event("FOMC Member Speaks", time="Tentative")])

    await scheduler.run_tick(utc(2026, 3, 10, 12, 0))
    await scheduler.run_tick(utc(2026, 3, 10, 12, 3))

    texts = transport.texts_for(1)
    assert len(texts) == 1
    assert "time not fixed" in texts[0]


@pytest.mark.asyncio
async def test_both_sources_send_separately(store, transport) -> None:
    """Test the same release from two feeds produces two reminders."""
    store.upsert_recipient(1)
    scheduler = make_scheduler(
        store,
        transport,
        [create_test_event(at=RELEASE)],
        mfb_events=[create_test_event(at=RELEASE, source=SOURCE_MYFXBOOK)],
    )

    await scheduler.run_tick(utc(2026, 3, 10, 12, 15))

    texts = transport.texts_for(1)
    assert len(texts) == 2
    assert any("Source: ForexFactory" in t for t in texts)
    assert any("Source: Myfxbook" in t for t in texts)


@pytest.mark.asyncio
async def test_daily_digest_once(store, transport) -> None:
    """Test the morning digest goes out once per local day."""
    store.upsert_recipient(1)
    scheduler = make_scheduler(store, transport, [create_test_event(at=RELEASE)])

    await scheduler.run_tick(utc(2026, 3, 10, 8, 2))
    await scheduler.run_tick(utc(2026, 3, 10, 8, 5))

    texts = transport.texts_for(1)
    assert len(texts) == 1
    assert "Economic calendar for 2026-03-10" in texts[0]
    assert store.has_sent("daily_1_2026-03-10")


@pytest.mark.asyncio
async def test_empty_daily_digest_not_marked(store, transport) -> None:
    """Test an empty day sends nothing and leaves the key free."""
    store.upsert_recipient(1)
    scheduler = make_scheduler(store, transport, [])

    await scheduler.run_tick(utc(2026, 3, 10, 8, 2))

    assert transport.sent == []
    assert not store.has_sent("daily_1_2026-03-10")


@pytest.mark.asyncio
async def test_news_delivery(store, transport) -> None:
    """Test news goes to recipients who follow the currency and want news."""
    store.upsert_recipient(1)
    store.upsert_recipient(2, settings=RecipientSettings(timezone="UTC", rss_enabled=False))
    store.upsert_recipient(3, settings=RecipientSettings(timezone="UTC", monitored_currencies=frozenset({"CAD"})))
    item = NewsItem(title="USD jumps on CPI", link="https://x/cpi", summary="", source="FXStreet", published=RELEASE)
    scheduler = make_scheduler(store, transport, [], news_feed=FakeNewsFeed([item]))

    await scheduler.run_tick(utc(2026, 3, 10, 12, 32))
    await scheduler.run_tick(utc(2026, 3, 10, 12, 35))

    assert len(transport.texts_for(1)) == 1
    assert transport.texts_for(2) == []
    assert transport.texts_for(3) == []


@pytest.mark.asyncio
async def test_blocked_recipient_does_not_stop_others(store, transport, caplog) -> None:
    """Test a blocked recipient is warned about once and others still receive."""
    store.upsert_recipient(1)
    store.upsert_recipient(2)
    transport.blocked.add(1)
    event = create_test_event(at=RELEASE)
    scheduler = make_scheduler(store, transport, [event])

    with caplog.at_level(logging.WARNING, logger="calendar_alerts.scheduler"):
        await scheduler.run_tick(utc(2026, 3, 10, 12, 15))
        await scheduler.run_tick(utc(2026, 3, 10, 12, 18))

    assert len(transport.texts_for(2)) == 1
    assert not store.has_sent(mark_key(NotificationKind.REMINDER, 1, event_fingerprint(event)))
    assert len([r for r in caplog.records if "unreachable" in r.getMessage()]) == 1


@pytest.mark.asyncio
async def test_rate_limited_analysis_retried_next_tick(store, transport) -> None:
    """Test a rate-limited analysis leaves the key free for the next tick."""
    store.upsert_recipient(1)
    analyzer = FakeAnalyzer(error=AnalysisRateLimited(retry_after=5))
    event = create_test_event(at=RELEASE)
    scheduler = make_scheduler(store, transport, [event], analyzer=analyzer)

    await scheduler.run_tick(utc(2026, 3, 10, 12, 15))
    assert transport.sent == []
    assert not store.has_sent(mark_key(NotificationKind.REMINDER, 1, event_fingerprint(event)))

    analyzer.error = None
    await scheduler.run_tick(utc(2026, 3, 10, 12, 18))

    texts = transport.texts_for(1)
    assert len(texts) == 1
    assert "7/10" in texts[0]


@pytest.mark.asyncio
async def test_delivery_error_retried_next_tick(store, transport) -> None:
    """Test a failed send is counted and retried while the window is open."""
    store.upsert_recipient(1)
    transport.failing.add(1)
    scheduler = make_scheduler(store, transport, [create_test_event(at=RELEASE)])

    report = await scheduler.run_tick(utc(2026, 3, 10, 12, 15))
    transport.failing.clear()
    await scheduler.run_tick(utc(2026, 3, 10, 12, 18))

    assert report.failed == 1
    assert len(transport.texts_for(1)) == 1


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(store, transport) -> None:
    """Test a tick arriving while another runs is skipped and counted."""
    store.upsert_recipient(1)
    gate = asyncio.Event()
    scheduler = NotificationScheduler(
        adapters=[FakeAdapter(SOURCE_FOREXFACTORY, [create_test_event(at=RELEASE)], gate=gate)],
        store=store,
        transport=transport,
    )

    running = asyncio.create_task(scheduler.run_tick(utc(2026, 3, 10, 12, 15)))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    skipped = await scheduler.run_tick(utc(2026, 3, 10, 12, 15))
    gate.set()
    report = await running

    assert skipped is None
    assert scheduler.skipped_busy == 1
    assert report.sent == 1
    assert scheduler.status()["skipped_busy"] == 1


@pytest.mark.asyncio
async def test_recipient_failure_is_isolated(store, transport, monkeypatch) -> None:
    """Test an exception for one recipient does not affect the others."""
    store.upsert_recipient(1)
    store.upsert_recipient(2)
    original = store.get_recipient_settings

    def broken(recipient_id: int) -> RecipientSettings:
        if recipient_id == 1:
            raise RuntimeError("corrupt settings")
        return original(recipient_id)

    monkeypatch.setattr(store, "get_recipient_settings", broken)
    scheduler = make_scheduler(store, transport, [create_test_event(at=RELEASE)])

    report = await scheduler.run_tick(utc(2026, 3, 10, 12, 15))

    assert report.errors == 1
    assert transport.texts_for(1) == []
    assert len(transport.texts_for(2)) == 1


@pytest.mark.asyncio
async def test_recipients_processed_in_batches(store, transport) -> None:
    """Test every recipient is served when there are more than one batch."""
    for rid in range(1, 6):
        store.upsert_recipient(rid)
    scheduler = make_scheduler(store, transport, [create_test_event(at=RELEASE)], batch_size=2)

    report = await scheduler.run_tick(utc(2026, 3, 10, 12, 15))

    assert report.recipients == 5
    assert sorted(rid for rid, _ in transport.sent) == [1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_preview_daily_does_not_mark(store, transport) -> None:
    """Test the on-demand digest leaves the scheduled one untouched."""
    store.upsert_recipient(1)
    scheduler = make_scheduler(store, transport, [create_test_event(at=RELEASE)])

    text = await scheduler.preview_daily(1, now=utc(2026, 3, 10, 7, 0))
    empty = await make_scheduler(store, transport, []).preview_daily(1, now=utc(2026, 3, 10, 7, 0))

    assert "CPI m/m" in text
    assert empty.startswith("📅 Nothing scheduled for 2026-03-10")
    assert not store.has_sent("daily_1_2026-03-10")


@pytest.mark.asyncio
async def test_start_registers_jobs(store, transport) -> None:
    """Test start() schedules the tick, the boot pass and the mark cleanup."""
    scheduler = make_scheduler(store, transport)

    scheduler.start()
    try:
        job_ids = {job.id for job in scheduler.sched.get_jobs()}
        tick = scheduler.sched.get_job("notification_tick")
    finally:
        scheduler.shutdown()

    assert job_ids == {"notification_tick", "notification_tick_boot", "prune_marks"}
    assert tick.max_instances > 1


@pytest.mark.asyncio
async def test_group_skips_members_already_reminded(store, transport) -> None:
    """Test a group forming around releases already reminded alone only sends the new one."""
    store.upsert_recipient(1)
    scheduler = make_scheduler(store, transport, nfp_release()[:2])
    await scheduler.run_tick(utc(2026, 3, 10, 12, 15))
    assert len(transport.texts_for(1)) == 2

    scheduler.adapters[0].events = nfp_release()
    await scheduler.run_tick(utc(2026, 3, 10, 12, 18))

    texts = transport.texts_for(1)
    assert len(texts) == 3
    assert "Average Hourly Earnings" in texts[2]
    assert "releases" not in texts[2]
    assert sum("Non-Farm Employment Change" in t for t in texts) == 1
    assert sum("Unemployment Rate" in t for t in texts) == 1


@pytest.mark.asyncio
async def test_group_skips_members_with_results_sent(store, transport) -> None:
    """Test a group forming around published results only sends the newly published one."""
    store.upsert_recipient(1)
    released = [
        create_test_event("Non-Farm Employment Change", at=RELEASE, forecast="160K", actual="150K"),
        create_test_event("Unemployment Rate", at=RELEASE, forecast="4.1%", actual="4.2%"),
    ]
    scheduler = make_scheduler(store, transport, released)
    await scheduler.run_tick(utc(2026, 3, 10, 12, 31))
    assert len(transport.texts_for(1)) == 2

    scheduler.adapters[0].events = released + [
        create_test_event("Average Hourly Earnings m/m", at=RELEASE, impact="Medium", actual="0.4%"),
    ]
    await scheduler.run_tick(utc(2026, 3, 10, 12, 34))

    texts = transport.texts_for(1)
    assert len(texts) == 3
    assert "Average Hourly Earnings" in texts[2]
    assert "Actual: `0.4%`" in texts[2]
    assert "releases" not in texts[2]
    assert sum("150K" in t for t in texts) == 1


@pytest.mark.asyncio
async def test_no_time_event_carries_analysis(store, transport) -> None:
    """Test undated announcements include the AI assessment."""
    store.upsert_recipient(1)
    analyzer = FakeAnalyzer()
    scheduler = make_scheduler(
        store, transport, [create_test_event("FOMC Member Speaks", time="Tentative")], analyzer=analyzer
    )

    await scheduler.run_tick(utc(2026, 3, 10, 12, 0))

    texts = transport.texts_for(1)
    assert len(texts) == 1
    assert "7/10" in texts[0]
    assert analyzer.calls[0].startswith("USD FOMC Member Speaks")


@pytest.mark.asyncio
async def test_news_carries_analysis(store, transport) -> None:
    """Test news items are scored from their headline and summary."""
    store.upsert_recipient(1)
    analyzer = FakeAnalyzer()
    item = NewsItem(title="USD jumps on CPI", link="https://x/cpi", summary="Hot print.", source="FXStreet", published=RELEASE)
    scheduler = make_scheduler(store, transport, [], news_feed=FakeNewsFeed([item]), analyzer=analyzer)

    await scheduler.run_tick(utc(2026, 3, 10, 12, 32))

    texts = transport.texts_for(1)
    assert len(texts) == 1
    assert "7/10" in texts[0]
    assert analyzer.calls == ["Breaking News: USD jumps on CPI. Summary: Hot print."]


@pytest.mark.asyncio
async def test_news_rate_limited_not_marked(store, transport) -> None:
    """Test a rate-limited news assessment is retried on the next tick."""
    store.upsert_recipient(1)
    analyzer = FakeAnalyzer(error=AnalysisRateLimited(retry_after=5))
    item = NewsItem(title="USD jumps on CPI", link="https://x/cpi", summary="", source="FXStreet", published=RELEASE)
    scheduler = make_scheduler(store, transport, [], news_feed=FakeNewsFeed([item]), analyzer=analyzer)

    await scheduler.run_tick(utc(2026, 3, 10, 12, 32))
    assert transport.sent == []

    analyzer.error = None
    await scheduler.run_tick(utc(2026, 3, 10, 12, 35))

    assert len(transport.texts_for(1)) == 1


@pytest.mark.asyncio
async def test_daily_overview_follows_digest(store, transport) -> None:
    """Test the AI day overview is sent once, right after the digest."""
    store.upsert_recipient(1)
    analyzer = FakeAnalyzer()
    scheduler = make_scheduler(store, transport, [create_test_event(at=RELEASE)], analyzer=analyzer)

    await scheduler.run_tick(utc(2026, 3, 10, 8, 2))
    await scheduler.run_tick(utc(2026, 3, 10, 8, 5))

    texts = transport.texts_for(1)
    assert len(texts) == 2
    assert "Economic calendar for 2026-03-10" in texts[0]
    assert "Detailed analysis for 2026-03-10" in texts[1]
    assert "Key focus: EURUSD" in texts[1]
    assert analyzer.day_calls == ["12:30 - [USD] CPI m/m (High) | Forecast: 0.3% | Previous: 0.2% | Actual: —"]
    assert store.has_sent(mark_key(NotificationKind.DAILY_ANALYSIS, 1, "2026-03-10"))


@pytest.mark.asyncio
async def test_daily_overview_retried_without_repeating_digest(store, transport) -> None:
    """Test a failed day overview leaves the digest sent and retries the overview alone."""
    store.upsert_recipient(1)
    analyzer = FakeAnalyzer(error=AnalysisRateLimited(retry_after=5))
    scheduler = make_scheduler(store, transport, [create_test_event(at=RELEASE)], analyzer=analyzer)

    await scheduler.run_tick(utc(2026, 3, 10, 8, 2))
    assert len(transport.texts_for(1)) == 1
    assert not store.has_sent(mark_key(NotificationKind.DAILY_ANALYSIS, 1, "2026-03-10"))

    analyzer.error = None
    await scheduler.run_tick(utc(2026, 3, 10, 8, 5))

    texts = transport.texts_for(1)
    assert len(texts) == 2
    assert "Detailed analysis" in texts[1]


@pytest.mark.asyncio
async def test_preview_tomorrow(store, transport) -> None:
    """Test the on-demand digest can cover the next local day."""
    store.upsert_recipient(1)
    scheduler = NotificationScheduler(
        adapters=[
            FakeAdapter(
                SOURCE_FOREXFACTORY,
                [create_test_event(at=RELEASE)],
                tomorrow=[create_test_event("GDP q/q", at=utc(2026, 3, 11, 9, 0))],
            )
        ],
        store=store,
        transport=transport,
    )

    text = await scheduler.preview_daily(1, now=utc(2026, 3, 10, 7, 0), day="tomorrow")

    assert "Economic calendar for 2026-03-11" in text
    assert "GDP q/q" in text
    assert "CPI m/m" not in text


@pytest.mark.asyncio
async def test_ask_uses_todays_releases(store, transport) -> None:
    """Test questions are answered with today's releases as context."""
    store.upsert_recipient(1)
    analyzer = FakeAnalyzer()
    scheduler = make_scheduler(store, transport, [create_test_event(at=RELEASE)], analyzer=analyzer)

    answer = await scheduler.ask(1, "Where is EURUSD heading?", now=utc(2026, 3, 10, 7, 0))

    assert answer.startswith("Trade the deviation")
    assert analyzer.questions == [("Where is EURUSD heading?", "12:30 - [USD] CPI m/m (Forecast: 0.3%)")]


@pytest.mark.asyncio
async def test_ask_without_analyzer(store, transport) -> None:
    """Test asking fails cleanly when no AI backend is configured."""
    store.upsert_recipient(1)
    scheduler = make_scheduler(store, transport, [])

    with pytest.raises(AnalysisError, match="not configured"):
        await scheduler.ask(1, "Is the Fed done hiking?")


@pytest.mark.asyncio
async def test_prune_marks_drops_old_keys(store, transport) -> None:
    """Test the nightly cleanup removes marks past the retention period."""
    store.mark_sent("reminder_1_old", at=now_utc() - timedelta(days=3))
    store.mark_sent("reminder_1_fresh")
    scheduler = make_scheduler(store, transport, retention_days=1)

    await scheduler.prune_marks()

    assert not store.has_sent("reminder_1_old")
    assert store.has_sent("reminder_1_fresh")
