from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from calendar_alerts.models import DEFAULT_CURRENCIES, Recipient, RecipientSettings
from calendar_alerts.utils.time import now_utc

log = logging.getLogger(__name__)


class StateStore(ABC):
    """Durable delivery marks plus the recipient settings table."""

    @abstractmethod
    def has_sent(self, key: str) -> bool: ...

    @abstractmethod
    def mark_sent(self, key: str, at: Optional[datetime] = None) -> None:
        """Record the key as sent. A key already marked keeps its first timestamp."""

    @abstractmethod
    def get_recipients(self) -> list[Recipient]: ...

    @abstractmethod
    def get_recipient_settings(self, recipient_id: int) -> RecipientSettings: ...

    @abstractmethod
    def upsert_recipient(
        self,
        recipient_id: int,
        *,
        username: Optional[str] = None,
        settings: Optional[RecipientSettings] = None,
    ) -> None: ...

    @abstractmethod
    def prune_sent(self, older_than: datetime) -> int:
        """Drop marks recorded before `older_than`; returns how many were removed."""

    def prune_older_than_days(self, days: int, now: Optional[datetime] = None) -> int:
        return self.prune_sent((now or now_utc()) - timedelta(days=days))


@dataclass
class StoreState:
    # mark key -> ISO timestamp of the send
    sent: dict[str, str] = field(default_factory=dict)
    # str(recipient_id) -> {"username", "registered_at", "settings": {...}}
    recipients: dict[str, dict[str, Any]] = field(default_factory=dict)


def _settings_to_raw(settings: RecipientSettings) -> dict[str, Any]:
    raw = asdict(settings)
    raw["monitored_currencies"] = sorted(settings.monitored_currencies)
    return raw


def _settings_from_raw(raw: dict[str, Any], default_tz: str) -> RecipientSettings:
    currencies = raw.get("monitored_currencies")
    if currencies is None:
        currencies = DEFAULT_CURRENCIES
    return RecipientSettings(
        timezone=raw.get("timezone") or default_tz,
        monitored_currencies=frozenset(c.upper() for c in currencies),
        source=raw.get("source") or "Both",
        impact_filter=raw.get("impact_filter") or "both",
        quiet_hours_enabled=bool(raw.get("quiet_hours_enabled", True)),
        rss_enabled=bool(raw.get("rss_enabled", True)),
    )


class JsonStateStore(StateStore):
    def __init__(self, path: str, *, default_timezone: str = "Europe/Kyiv") -> None:
        self.path = path
        self.default_timezone = default_timezone
        self.state = self._load()

    def _load(self) -> StoreState:
        if not os.path.exists(self.path):
            return StoreState()

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f) or {}
            return StoreState(
                sent=dict(raw.get("sent", {}) or {}),
                recipients=dict(raw.get("recipients", {}) or {}),
            )
        except (OSError, ValueError) as ex:
            log.warning("State file %s unreadable (%s); starting with empty state", self.path, ex)
            return StoreState()

    def save(self) -> None:
        Path(self.path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        tmp = f"{self.path}.tmp"
        raw = {"sent": self.state.sent, "recipients": self.state.recipients}
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(raw, f, indent=2, sort_keys=True)
        os.replace(tmp, self.path)

    # marks

    def has_sent(self, key: str) -> bool:
        return key in self.state.sent

    def mark_sent(self, key: str, at: Optional[datetime] = None) -> None:
        if key in self.state.sent:
            return
        self.state.sent[key] = (at or now_utc()).isoformat()
        self.save()

    def prune_sent(self, older_than: datetime) -> int:
        stale = [
            key
            for key, stamp in self.state.sent.items()
            if _parse_stamp(stamp) is None or _parse_stamp(stamp) < older_than
        ]
        for key in stale:
            del self.state.sent[key]
        if stale:
            self.save()
        log.info("Pruned %d delivery marks older than %s", len(stale), older_than.isoformat())
        return len(stale)

    # recipients

    def get_recipients(self) -> list[Recipient]:
        out: list[Recipient] = []
        for rid, row in self.state.recipients.items():
            registered = row.get("registered_at")
            out.append(
                Recipient(
                    recipient_id=int(rid),
                    username=row.get("username"),
                    registered_at=_parse_stamp(registered) if registered else None,
                )
            )
        return out

    def get_recipient_settings(self, recipient_id: int) -> RecipientSettings:
        row = self.state.recipients.get(str(recipient_id)) or {}
        return _settings_from_raw(row.get("settings") or {}, self.default_timezone)

    def upsert_recipient(
        self,
        recipient_id: int,
        *,
        username: Optional[str] = None,
        settings: Optional[RecipientSettings] = None,
    ) -> None:
        row = self.state.recipients.setdefault(
            str(recipient_id),
            {"username": None, "registered_at": now_utc().isoformat(), "settings": {}},
        )
        if username is not None:
            row["username"] = username
        if settings is not None:
            row["settings"] = _settings_to_raw(settings)
        self.save()


def _parse_stamp(stamp: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(stamp)
    except (TypeError, ValueError):
        return None
