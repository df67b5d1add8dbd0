"""
AI scoring of calendar events, day overviews and trader questions.

``GroqAnalyzer`` talks to an OpenAI-compatible chat-completions endpoint and
walks a list of models in priority order: when one is rate limited it waits
briefly and tries the next. ``CachedAnalyzer`` sits in front of any analyzer
and reuses results for identical event content across recipients.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
from typing import Awaitable, Callable, Iterable, MutableMapping, Optional, Protocol, Sequence

import httpx
from cachetools import TTLCache
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from calendar_alerts.errors import AnalysisError, AnalysisRateLimited
from calendar_alerts.models import AnalysisResult, EventGroup, NewsItem, RawEvent
from calendar_alerts.utils.time import format_hhmm

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_MODELS = ("llama-3.3-70b-versatile", "llama-3.1-8b-instant")
DEFAULT_CACHE_TTL_SECONDS = 600
MAX_RATE_LIMIT_WAIT_SECONDS = 10.0

SENTIMENTS = ("Pos", "Neg", "Neutral")
FOCUS_PAIRS = ("GBPUSD", "EURUSD", "NZDUSD", "USDJPY")

SYSTEM_PROMPT = "You are a professional forex market analyst. Always answer with valid JSON only, no markdown, no commentary."

USER_PROMPT = """Assess the market impact of the economic release below.

Rules:
- Output ONLY a JSON object, starting with {{ and ending with }}.
- "score": integer 0-10 (0 = irrelevant for FX, 10 = major impact on currency markets).
- "sentiment": one of "Pos", "Neg", "Neutral" for the event currency.
- "summary": at most 25 words, WHAT happened.
- "reasoning": at most 30 words, WHY it matters (e.g. "CPI above forecast -> rate hike odds up -> USD positive").
- "affected_pairs": list of pairs, focus on {pairs}.
- If Actual and Forecast are both given, explain the deviation in "reasoning".

Release:
{text}"""

DAY_SYSTEM_PROMPT = "You are a senior forex trader. Analyse the calendar with financial logic. Answer in Markdown."

DAY_PROMPT = """Analyse today's economic calendar for a professional trader.

For every High and Medium impact release give the time, the currency and the title, then
the expected direction and the causal chain (e.g. "GDP > 2.5% -> growth confirmed -> hike odds up -> USD stronger"),
the pairs it moves and, where you can estimate it, the expected volatility in pips.
Finish with the key focus: the pair to watch, the main risks and the opportunities of the day.

Rules:
- No vague phrases such as "the market is volatile"; be concrete.
- Use Forecast and Previous where given.
- Focus on {pairs}.

Calendar:
{text}"""

QUESTION_SYSTEM_PROMPT = "You are a forex mentor. Answer briefly, professionally and practically."

QUESTION_PROMPT = """Answer the trader's question using the market context when it is relevant,
otherwise general trading theory. Be brief and give concrete examples where possible.
{context}
Question:
{question}"""


class Analyzer(Protocol):
    async def score_event(self, text: str) -> AnalysisResult: ...

    async def analyze_day(self, text: str) -> str: ...

    async def answer_question(self, question: str, context: Optional[str] = None) -> str: ...


def _clock(event: RawEvent, tz_name: str) -> str:
    if event.time_instant is None:
        return (event.time or "").strip() or "All Day"
    return format_hhmm(event.time_instant, tz_name)


def event_analysis_text(event: RawEvent) -> str:
    return (
        f"{event.currency} {event.title}\n"
        f"Actual: {event.actual}\n"
        f"Forecast: {event.forecast}\n"
        f"Previous: {event.previous}"
    )


def group_analysis_text(group: EventGroup) -> str:
    return "\n\n".join(event_analysis_text(e) for e in group.events)


def news_analysis_text(item: NewsItem) -> str:
    return f"Breaking News: {item.title}. Summary: {item.summary}"


def daily_analysis_text(events: Sequence[RawEvent], tz_name: str) -> str:
    """One line per release, e.g. '14:30 - [USD] CPI m/m (High) | Forecast: 0.3% | Previous: 0.2% | Actual: —'."""
    return "\n".join(
        f"{_clock(e, tz_name)} - [{e.currency}] {e.title} ({e.impact}) | "
        f"Forecast: {e.forecast} | Previous: {e.previous} | Actual: {e.actual}"
        for e in events
    )


def question_context(events: Sequence[RawEvent], tz_name: str, limit: int = 5) -> Optional[str]:
    if not events:
        return None
    return "\n".join(
        f"{_clock(e, tz_name)} - [{e.currency}] {e.title} (Forecast: {e.forecast})" for e in events[:limit]
    )


def parse_analysis(raw: str) -> AnalysisResult:
    """Parse and validate the model's JSON answer."""
    cleaned = re.sub(r"```(?:json)?", "", raw or "").strip()
    try:
        data = json.loads(cleaned)
    except ValueError as ex:
        raise AnalysisError(f"Model returned invalid JSON: {ex}") from ex
    if not isinstance(data, dict):
        raise AnalysisError("Model returned a non-object JSON value")

    score = data.get("score")
    if isinstance(score, bool) or not isinstance(score, (int, float)) or not 0 <= score <= 10:
        raise AnalysisError(f"Invalid score: {score!r}")
    sentiment = data.get("sentiment")
    if sentiment not in SENTIMENTS:
        raise AnalysisError(f"Invalid sentiment: {sentiment!r}")
    reasoning = data.get("reasoning")
    if not isinstance(reasoning, str) or not reasoning.strip():
        raise AnalysisError("Missing reasoning")
    pairs = data.get("affected_pairs", [])
    if not isinstance(pairs, list):
        raise AnalysisError("affected_pairs must be a list")

    return AnalysisResult(
        score=int(round(score)),
        sentiment=sentiment,
        summary=str(data.get("summary") or "").strip(),
        reasoning=reasoning.strip(),
        affected_pairs=tuple(str(p) for p in pairs),
    )


def _retry_after_seconds(resp: httpx.Response) -> float:
    raw = resp.headers.get("retry-after")
    try:
        wait = float(raw) if raw is not None else 5.0
    except ValueError:
        wait = 5.0
    return max(0.0, min(wait, MAX_RATE_LIMIT_WAIT_SECONDS))


class GroqAnalyzer:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        models: Sequence[str] = DEFAULT_MODELS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not models:
            raise ValueError("at least one model is required")
        self.client = client
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.models = tuple(models)
        self._sleep = sleep

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_fixed(1),
        reraise=True,
    )
    async def _post(self, payload: dict) -> httpx.Response:
        return await self.client.post(
            f"{self.base_url}/chat/completions",
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

    async def _complete(self, messages: list[dict], *, temperature: float = 0.3, max_tokens: int = 600) -> str:
        for i, model in enumerate(self.models):
            payload = {"model": model, "messages": messages, "temperature": temperature, "max_tokens": max_tokens}
            try:
                resp = await self._post(payload)
            except httpx.TransportError as ex:
                raise AnalysisError(f"Analysis request failed: {ex}") from ex

            if resp.status_code == 429:
                wait = _retry_after_seconds(resp)
                if i + 1 < len(self.models):
                    log.warning("Rate limited on %s; waiting %.1fs then trying %s", model, wait, self.models[i + 1])
                    await self._sleep(wait)
                    continue
                log.warning("Rate limited on last model %s", model)
                raise AnalysisRateLimited(retry_after=wait)

            if resp.status_code >= 400:
                raise AnalysisError(f"{model} returned HTTP {resp.status_code}")

            try:
                return resp.json()["choices"][0]["message"]["content"] or ""
            except (ValueError, KeyError, IndexError, TypeError) as ex:
                raise AnalysisError(f"Unexpected completion payload from {model}") from ex

        raise AnalysisError("No model produced a completion")

    async def score_event(self, text: str) -> AnalysisResult:
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": USER_PROMPT.format(pairs=", ".join(FOCUS_PAIRS), text=text)},
        ]
        return parse_analysis(await self._complete(messages))

    async def analyze_day(self, text: str) -> str:
        messages = [
            {"role": "system", "content": DAY_SYSTEM_PROMPT},
            {"role": "user", "content": DAY_PROMPT.format(pairs=", ".join(FOCUS_PAIRS), text=text)},
        ]
        answer = (await self._complete(messages, temperature=0.4, max_tokens=1500)).strip()
        if not answer:
            raise AnalysisError("Model returned an empty day analysis")
        return answer

    async def answer_question(self, question: str, context: Optional[str] = None) -> str:
        note = f"\nCurrent market context:\n{context}\n" if context else ""
        messages = [
            {"role": "system", "content": QUESTION_SYSTEM_PROMPT},
            {"role": "user", "content": QUESTION_PROMPT.format(context=note, question=question)},
        ]
        answer = (await self._complete(messages, temperature=0.5, max_tokens=800)).strip()
        if not answer:
            raise AnalysisError("Model returned an empty answer")
        return answer


class CachedAnalyzer:
    """Content-hash TTL cache shared by every recipient in the process."""

    def __init__(self, inner: Analyzer, cache: Optional[MutableMapping] = None) -> None:
        self.inner = inner
        self.cache: MutableMapping = cache if cache is not None else TTLCache(maxsize=1024, ttl=DEFAULT_CACHE_TTL_SECONDS)

    @staticmethod
    def cache_key(text: str, kind: str = "score") -> str:
        digest = hashlib.md5(text.encode("utf-8")).hexdigest()
        return digest if kind == "score" else f"{kind}:{digest}"

    async def _cached(self, key: str, compute: Callable[[], Awaitable]):
        hit = self.cache.get(key)
        if hit is not None:
            return hit
        # failures are not cached
        result = await compute()
        self.cache[key] = result
        return result

    async def score_event(self, text: str) -> AnalysisResult:
        return await self._cached(self.cache_key(text), lambda: self.inner.score_event(text))

    async def analyze_day(self, text: str) -> str:
        return await self._cached(self.cache_key(text, "day"), lambda: self.inner.analyze_day(text))

    async def answer_question(self, question: str, context: Optional[str] = None) -> str:
        key = self.cache_key(f"{question}\n{context or ''}", "question")
        return await self._cached(key, lambda: self.inner.answer_question(question, context))


def build_analyzer(
    client: httpx.AsyncClient,
    *,
    api_key: Optional[str],
    base_url: str = DEFAULT_BASE_URL,
    models: Iterable[str] = DEFAULT_MODELS,
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
) -> Optional[Analyzer]:
    if not api_key:
        log.info("No analysis API key configured; messages go out without AI analysis")
        return None
    groq = GroqAnalyzer(client, api_key=api_key, base_url=base_url, models=tuple(models))
    return CachedAnalyzer(groq, TTLCache(maxsize=1024, ttl=cache_ttl_seconds))
