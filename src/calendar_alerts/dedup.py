"""
Deduplication of raw calendar records within a single source.

Two records share a dedup key when they come from the same source, fall into
the same 5-minute bucket, have the same currency and the same normalized
title. The source is part of the key, so records from different feeds are
never merged even when they describe the same release.

When a key repeats, the later record replaces the kept one only if it wins
the precedence: each rule maps an event to a comparable value and rules are
evaluated in order, higher value wins, full ties keep the first-seen record.
"""
import hashlib
import logging
from typing import Callable, Iterable, Sequence

from calendar_alerts.models import CanonicalEvent, RawEvent
from calendar_alerts.utils.time import floor_minutes
from calendar_alerts.utils.values import has_data, normalize_title

log = logging.getLogger(__name__)

DEDUP_BUCKET_MINUTES = 5

PrecedenceRule = Callable[[RawEvent], int]

PRECEDENCE_RULES: dict[str, PrecedenceRule] = {
    "has_data": lambda e: int(has_data(e)),
    "high_impact": lambda e: int(e.impact == "High"),
}

DEFAULT_PRECEDENCE = ("has_data", "high_impact")


def time_bucket(event: RawEvent) -> str:
    if event.time_instant is not None:
        return floor_minutes(event.time_instant, DEDUP_BUCKET_MINUTES).strftime("%Y-%m-%dT%H:%M")
    # unparsed slots (Tentative, All Day, garbage) still dedupe on the raw string
    return (event.time or "").strip()


def dedup_key(event: RawEvent) -> str:
    material = f"{event.source}_{time_bucket(event)}_{event.currency}_{normalize_title(event.title)}"
    return hashlib.md5(material.encode("utf-8")).hexdigest()


def resolve_precedence(names: Sequence[str]) -> tuple[PrecedenceRule, ...]:
    unknown = [n for n in names if n not in PRECEDENCE_RULES]
    if unknown:
        raise ValueError(f"Unknown dedup precedence rule(s): {', '.join(unknown)}")
    return tuple(PRECEDENCE_RULES[n] for n in names)


def should_replace(candidate: RawEvent, existing: RawEvent, rules: Sequence[PrecedenceRule]) -> bool:
    for rule in rules:
        c, e = rule(candidate), rule(existing)
        if c != e:
            return c > e
    return False


def dedupe(events: Iterable[RawEvent], precedence: Sequence[str] = DEFAULT_PRECEDENCE) -> list[CanonicalEvent]:
    """Return one record per dedup key, in first-seen key order."""
    rules = resolve_precedence(precedence)
    kept: dict[str, CanonicalEvent] = {}

    for ev in events:
        key = dedup_key(ev)
        existing = kept.get(key)
        if existing is None:
            kept[key] = ev
            continue
        if should_replace(ev, existing, rules):
            log.debug("Replaced duplicate within %s: %s -> %s", ev.source, existing.title, ev.title)
            kept[key] = ev

    return list(kept.values())
