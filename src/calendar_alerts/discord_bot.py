import logging
from dataclasses import replace
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import discord
from discord.ext import commands

from calendar_alerts.errors import AnalysisError
from calendar_alerts.models import ALL_SOURCES, RecipientSettings
from calendar_alerts.scheduler import NotificationScheduler
from calendar_alerts.store import StateStore
from calendar_alerts.utils.fmt import chunk_message
from calendar_alerts.views import Day

log = logging.getLogger(__name__)

IMPACT_FILTERS = ("high_only", "medium_only", "both")
SETTING_FIELDS = ("timezone", "currencies", "source", "impact", "quiet", "news")

_TRUE = ("on", "yes", "true", "1")
_FALSE = ("off", "no", "false", "0")


def _flag(value: str) -> bool:
    v = value.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ValueError(f"expected on/off, got {value!r}")


def apply_setting(settings: RecipientSettings, field: str, value: str) -> RecipientSettings:
    """Return updated settings for a `!set <field> <value>` command; ValueError on bad input."""
    field = field.strip().lower()
    value = (value or "").strip()
    if field == "timezone":
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone {value!r}") from None
        return replace(settings, timezone=value)
    if field == "currencies":
        codes = frozenset(c.strip().upper() for c in value.replace(",", " ").split() if c.strip())
        if not codes or any(len(c) != 3 or not c.isalpha() for c in codes):
            raise ValueError("currencies must be 3-letter codes, e.g. USD EUR")
        return replace(settings, monitored_currencies=codes)
    if field == "source":
        choices = {s.lower(): s for s in (*ALL_SOURCES, "Both")}
        if value.lower() not in choices:
            raise ValueError(f"source must be one of {', '.join(choices.values())}")
        return replace(settings, source=choices[value.lower()])
    if field == "impact":
        if value.lower() not in IMPACT_FILTERS:
            raise ValueError(f"impact must be one of {', '.join(IMPACT_FILTERS)}")
        return replace(settings, impact_filter=value.lower())
    if field == "quiet":
        return replace(settings, quiet_hours_enabled=_flag(value))
    if field == "news":
        return replace(settings, rss_enabled=_flag(value))
    raise ValueError(f"unknown setting {field!r}; choose from {', '.join(SETTING_FIELDS)}")


def describe_settings(settings: RecipientSettings) -> str:
    return "\n".join(
        [
            "**Your alert settings**",
            f"timezone: `{settings.timezone}`",
            f"currencies: `{' '.join(sorted(settings.monitored_currencies))}`",
            f"source: `{settings.source}`",
            f"impact: `{settings.impact_filter}`",
            f"quiet: `{'on' if settings.quiet_hours_enabled else 'off'}`",
            f"news: `{'on' if settings.rss_enabled else 'off'}`",
        ]
    )


class AlertsBot(commands.Bot):
    def __init__(self, *, store: StateStore) -> None:
        intents = discord.Intents.default()
        intents.message_content = True
        super().__init__(command_prefix="!", intents=intents)

        self.store = store
        self.scheduler: Optional[NotificationScheduler] = None

        self._register_commands()

    def _register_commands(self) -> None:
        @self.command(name="start")
        async def start_cmd(ctx: commands.Context) -> None:
            """Subscribe to calendar alerts by direct message."""
            self.store.upsert_recipient(ctx.author.id, username=str(ctx.author))
            settings = self.store.get_recipient_settings(ctx.author.id)
            await ctx.send("Subscribed. Alerts arrive by DM.\n\n" + describe_settings(settings))

        @self.command(name="settings")
        async def settings_cmd(ctx: commands.Context) -> None:
            await ctx.send(describe_settings(self.store.get_recipient_settings(ctx.author.id)))

        @self.command(name="set")
        async def set_cmd(ctx: commands.Context, field: str, *, value: str) -> None:
            """!set timezone Europe/London | currencies USD EUR | source Both | impact high_only | quiet off | news on"""
            current = self.store.get_recipient_settings(ctx.author.id)
            try:
                updated = apply_setting(current, field, value)
            except ValueError as ex:
                await ctx.send(f"Not changed: {ex}")
                return
            self.store.upsert_recipient(ctx.author.id, username=str(ctx.author), settings=updated)
            await ctx.send(describe_settings(updated))

        @self.command(name="today")
        async def today_cmd(ctx: commands.Context) -> None:
            await self._send_preview(ctx, "today")

        @self.command(name="tomorrow")
        async def tomorrow_cmd(ctx: commands.Context) -> None:
            await self._send_preview(ctx, "tomorrow")

        @self.command(name="ask")
        async def ask_cmd(ctx: commands.Context, *, question: str = "") -> None:
            """!ask <question> about the market; today's releases are used as context."""
            question = question.strip()
            if not question:
                await ctx.send("Usage: `!ask <question>`, e.g. `!ask How will CPI move EURUSD?`")
                return
            if self.scheduler is None:
                await ctx.send("Not ready yet, try again in a minute.")
                return
            try:
                answer = await self.scheduler.ask(ctx.author.id, question)
            except AnalysisError as ex:
                log.warning("!ask failed: %s", ex)
                await ctx.send(f"Cannot answer right now: {ex}")
                return
            for part in chunk_message(f"💬 **{question}**\n\n{answer}"):
                await ctx.send(part)

    async def _send_preview(self, ctx: commands.Context, day: Day) -> None:
        if self.scheduler is None:
            await ctx.send("Not ready yet, try again in a minute.")
            return
        try:
            text = await self.scheduler.preview_daily(ctx.author.id, day=day)
            for part in chunk_message(text):
                await ctx.send(part)
        except Exception as ex:
            log.exception("!%s failed: %s", day, ex)
            await ctx.send(f"Failed to fetch calendar: `{type(ex).__name__}`")

    async def on_ready(self) -> None:
        log.info("Logged in as %s", self.user)
        if self.scheduler is not None and not self.scheduler.sched.running:
            self.scheduler.start()
