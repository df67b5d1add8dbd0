import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

log = logging.getLogger(__name__)

BROWSER_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


@dataclass(frozen=True)
class HttpPolicy:
    user_agent: str = "calendar-alerts/1.0"
    timeout_seconds: float = 20.0
    attempts: int = 3


class HttpClient:
    """
    Shared async client for every scraper and the AI endpoint:
    - explicit User-Agent
    - conservative timeouts
    - transport errors retried with backoff, HTTP errors raised as-is
    """

    def __init__(self, policy: Optional[HttpPolicy] = None, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.policy = policy or HttpPolicy()
        self.client = httpx.AsyncClient(
            headers={
                "User-Agent": self.policy.user_agent,
                "Accept": BROWSER_ACCEPT,
                "Accept-Language": "en-US,en;q=0.9",
            },
            timeout=self.policy.timeout_seconds,
            follow_redirects=True,
            transport=transport,
        )
        self._get = retry(
            retry=retry_if_exception_type(httpx.TransportError),
            stop=stop_after_attempt(self.policy.attempts),
            wait=wait_exponential(multiplier=0.5, max=5),
            reraise=True,
        )(self._get_once)

    async def _get_once(self, url: str, params: Optional[dict] = None) -> httpx.Response:
        resp = await self.client.get(url, params=params)
        resp.raise_for_status()
        return resp

    async def get_text(self, url: str, *, params: Optional[dict] = None) -> str:
        resp = await self._get(url, params)
        log.debug("GET %s -> %d (%d bytes)", resp.url, resp.status_code, len(resp.content))
        return resp.text

    async def aclose(self) -> None:
        await self.client.aclose()
