import asyncio
import logging

import uvicorn
from cachetools import TTLCache

from calendar_alerts.analysis import build_analyzer
from calendar_alerts.config import AppSettings
from calendar_alerts.discord_bot import AlertsBot
from calendar_alerts.logging_config import setup_logging
from calendar_alerts.models import SOURCE_FOREXFACTORY, SOURCE_MYFXBOOK
from calendar_alerts.providers import ForexFactoryAdapter, MyfxbookAdapter, NewsFeed
from calendar_alerts.providers.base import SourceAdapter
from calendar_alerts.quality import DeliveryFilter
from calendar_alerts.scheduler import NotificationScheduler
from calendar_alerts.store import JsonStateStore
from calendar_alerts.transport import DiscordTransport
from calendar_alerts.utils.http import HttpClient, HttpPolicy
from calendar_alerts.views import RecipientViewBuilder
from calendar_alerts.web.health import create_app

log = logging.getLogger(__name__)


def build_adapters(settings: AppSettings, http: HttpClient) -> list[SourceAdapter]:
    adapters: list[SourceAdapter] = []
    ttl = settings.source_cache_ttl_seconds
    if SOURCE_FOREXFACTORY in settings.enabled_sources:
        adapters.append(
            ForexFactoryAdapter(
                http,
                tz_name=settings.forexfactory_timezone,
                cache=TTLCache(maxsize=32, ttl=ttl),
            )
        )
    if SOURCE_MYFXBOOK in settings.enabled_sources:
        adapters.append(MyfxbookAdapter(http, cache=TTLCache(maxsize=4, ttl=ttl)))
    return adapters


async def start_health_server(app, host: str, port: int) -> None:
    config = uvicorn.Config(app, host=host, port=port, log_level="warning")
    server = uvicorn.Server(config)
    await server.serve()


async def main() -> None:
    settings = AppSettings.load()
    setup_logging(settings.log_level)

    store = JsonStateStore(settings.state_path, default_timezone=settings.default_timezone)
    http = HttpClient(HttpPolicy(user_agent=settings.user_agent))

    news_feed = None
    if settings.rss_enabled:
        news_feed = NewsFeed(
            http,
            url=settings.rss_url,
            keywords=settings.rss_keywords,
            window_minutes=settings.rss_window_minutes,
        )

    analyzer = build_analyzer(
        http.client,
        api_key=settings.groq_api_key,
        base_url=settings.analysis_base_url,
        models=settings.analysis_models,
        cache_ttl_seconds=settings.analysis_cache_ttl_seconds,
    )

    bot = AlertsBot(store=store)
    scheduler = NotificationScheduler(
        adapters=build_adapters(settings, http),
        store=store,
        transport=DiscordTransport(bot),
        windows=settings.windows,
        view_builder=RecipientViewBuilder(TTLCache(maxsize=512, ttl=settings.view_cache_ttl_seconds)),
        delivery_filter=DeliveryFilter(),
        analyzer=analyzer,
        news_feed=news_feed,
        batch_size=settings.batch_size,
        batch_pause_seconds=settings.batch_pause_seconds,
        startup_delay_seconds=settings.startup_delay_seconds,
        retention_days=settings.retention_days,
        precedence=settings.dedup_precedence,
    )
    # started from on_ready, once the transport can deliver
    bot.scheduler = scheduler

    log.info(
        "Starting: sources=%s recipients=%d analysis=%s",
        ", ".join(settings.enabled_sources),
        len(store.get_recipients()),
        "on" if analyzer else "off",
    )

    try:
        await asyncio.gather(
            start_health_server(create_app(scheduler.status), settings.health_host, settings.health_port),
            bot.start(settings.discord_bot_token),
        )
    finally:
        scheduler.shutdown()
        await http.aclose()
        if not bot.is_closed():
            await bot.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
