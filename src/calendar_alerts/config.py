import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from dotenv import load_dotenv

from calendar_alerts.analysis import DEFAULT_BASE_URL, DEFAULT_MODELS
from calendar_alerts.dedup import DEFAULT_PRECEDENCE, resolve_precedence
from calendar_alerts.errors import ConfigError
from calendar_alerts.models import ALL_SOURCES
from calendar_alerts.notifications import NotificationWindows
from calendar_alerts.providers.news import DEFAULT_FEED_URL, DEFAULT_KEYWORDS

DEFAULT_CONFIG_PATH = "./config.yaml"


def _section(raw: Mapping[str, Any], name: str) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"config section '{name}' must be a mapping")
    return value


def _int(section: Mapping[str, Any], key: str, default: int, *, where: str, minimum: int = 0) -> int:
    value = section.get(key, default)
    try:
        out = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{where}.{key} must be an integer, got {value!r}") from None
    if out < minimum:
        raise ConfigError(f"{where}.{key} must be >= {minimum}, got {out}")
    return out


def _float(section: Mapping[str, Any], key: str, default: float, *, where: str) -> float:
    value = section.get(key, default)
    try:
        out = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{where}.{key} must be a number, got {value!r}") from None
    if out < 0:
        raise ConfigError(f"{where}.{key} must not be negative")
    return out


def _timezone(name: str, *, where: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigError(f"{where}: unknown timezone {name!r}") from None
    return name


@dataclass(frozen=True)
class AppSettings:
    discord_bot_token: str

    config_path: str
    state_path: str
    log_level: str

    groq_api_key: Optional[str]
    default_timezone: str

    health_host: str
    health_port: int
    user_agent: str

    windows: NotificationWindows
    batch_size: int
    batch_pause_seconds: float
    startup_delay_seconds: int

    view_cache_ttl_seconds: int
    analysis_cache_ttl_seconds: int
    source_cache_ttl_seconds: int

    enabled_sources: tuple[str, ...]
    forexfactory_timezone: str

    rss_enabled: bool
    rss_url: str
    rss_keywords: tuple[str, ...]
    rss_window_minutes: int

    analysis_base_url: str
    analysis_models: tuple[str, ...]

    dedup_precedence: tuple[str, ...]
    retention_days: int

    raw_config: dict[str, Any]

    @staticmethod
    def load() -> "AppSettings":
        load_dotenv()

        config_path = os.getenv("CONFIG_PATH", DEFAULT_CONFIG_PATH)
        if os.path.exists(config_path):
            with open(config_path, "r", encoding="utf-8") as f:
                raw_config = yaml.safe_load(f) or {}
        elif "CONFIG_PATH" in os.environ:
            raise ConfigError(f"CONFIG_PATH points to a missing file: {config_path}")
        else:
            raw_config = {}

        settings = AppSettings.build(os.environ, raw_config, config_path=config_path)

        # Ensure the state directory exists before the store writes to it
        Path(settings.state_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        return settings

    @staticmethod
    def build(env: Mapping[str, str], raw_config: Mapping[str, Any], *, config_path: str = DEFAULT_CONFIG_PATH) -> "AppSettings":
        if not isinstance(raw_config, Mapping):
            raise ConfigError("config file must contain a mapping at the top level")

        token = (env.get("DISCORD_BOT_TOKEN") or "").strip()
        if not token:
            raise ConfigError("DISCORD_BOT_TOKEN is required")

        port_raw = (env.get("HEALTH_PORT") or "8080").strip()
        if not port_raw.isdigit():
            raise ConfigError("HEALTH_PORT must be an integer")

        scheduler = _section(raw_config, "scheduler")
        windows_cfg = _section(raw_config, "windows")
        caches = _section(raw_config, "caches")
        sources = _section(raw_config, "sources")
        rss = _section(raw_config, "rss")
        analysis = _section(raw_config, "analysis")
        dedup = _section(raw_config, "dedup")
        retention = _section(raw_config, "retention")

        tick = _int(scheduler, "tick_minutes", 3, where="scheduler", minimum=1)
        try:
            windows = NotificationWindows(
                tick_minutes=tick,
                reminder_lead_minutes=_int(windows_cfg, "reminder_lead_minutes", 15, where="windows"),
                reminder_width_minutes=_int(windows_cfg, "reminder_width_minutes", 2 * tick, where="windows"),
                result_delay_minutes=_int(windows_cfg, "result_delay_minutes", 0, where="windows"),
                result_duration_minutes=_int(windows_cfg, "result_duration_minutes", 120, where="windows"),
                quiet_start_hour=_int(windows_cfg, "quiet_start_hour", 23, where="windows"),
                quiet_end_hour=_int(windows_cfg, "quiet_end_hour", 8, where="windows"),
                daily_hour=_int(windows_cfg, "daily_hour", 8, where="windows"),
                daily_width_minutes=_int(windows_cfg, "daily_width_minutes", 2 * tick, where="windows"),
            )
        except ValueError as ex:
            raise ConfigError(f"windows: {ex}") from ex

        view_ttl = _int(caches, "view_ttl_seconds", 120, where="caches", minimum=1)
        if view_ttl >= tick * 60:
            raise ConfigError(f"caches.view_ttl_seconds ({view_ttl}) must be shorter than the tick ({tick * 60}s)")

        enabled = tuple(sources.get("enabled") or ALL_SOURCES)
        unknown = [s for s in enabled if s not in ALL_SOURCES]
        if unknown:
            raise ConfigError(f"sources.enabled: unknown source(s) {', '.join(unknown)}")

        precedence = tuple(dedup.get("precedence") or DEFAULT_PRECEDENCE)
        try:
            resolve_precedence(precedence)
        except ValueError as ex:
            raise ConfigError(f"dedup.precedence: {ex}") from ex

        models = tuple(analysis.get("models") or DEFAULT_MODELS)
        if not models:
            raise ConfigError("analysis.models must list at least one model")

        return AppSettings(
            discord_bot_token=token,
            config_path=config_path,
            state_path=env.get("STATE_PATH") or "./data/state.json",
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
            groq_api_key=(env.get("GROQ_API_KEY") or "").strip() or None,
            default_timezone=_timezone(env.get("DEFAULT_TIMEZONE") or "Europe/Kyiv", where="DEFAULT_TIMEZONE"),
            health_host=env.get("HEALTH_HOST") or "0.0.0.0",
            health_port=int(port_raw),
            user_agent=env.get("USER_AGENT") or "Mozilla/5.0 (compatible; calendar-alerts/1.0)",
            windows=windows,
            batch_size=_int(scheduler, "batch_size", 40, where="scheduler", minimum=1),
            batch_pause_seconds=_float(scheduler, "batch_pause_seconds", 0.15, where="scheduler"),
            startup_delay_seconds=_int(scheduler, "startup_delay_seconds", 5, where="scheduler"),
            view_cache_ttl_seconds=view_ttl,
            analysis_cache_ttl_seconds=_int(caches, "analysis_ttl_seconds", 600, where="caches", minimum=1),
            source_cache_ttl_seconds=_int(caches, "source_ttl_seconds", 300, where="caches", minimum=1),
            enabled_sources=enabled,
            forexfactory_timezone=_timezone(
                str(sources.get("forexfactory_timezone") or "America/New_York"), where="sources.forexfactory_timezone"
            ),
            rss_enabled=bool(rss.get("enabled", True)),
            rss_url=str(rss.get("url") or DEFAULT_FEED_URL),
            rss_keywords=tuple(rss.get("keywords") or DEFAULT_KEYWORDS),
            rss_window_minutes=_int(rss, "window_minutes", 10, where="rss", minimum=1),
            analysis_base_url=str(analysis.get("base_url") or DEFAULT_BASE_URL),
            analysis_models=models,
            dedup_precedence=precedence,
            retention_days=_int(retention, "mark_days", 1, where="retention", minimum=1),
            raw_config=dict(raw_config),
        )
