"""HTTP fetch capability used by discovery and detail extraction."""

from __future__ import annotations

import logging
from time import perf_counter
from typing import Protocol

import httpx

from .config import DEFAULT_USER_AGENT
from .models import FetchResult, FetchTrace

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 15_000


class Fetcher(Protocol):
    """Anything that can fetch a URL with a per-call timeout."""

    async def fetch(self, url: str, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> FetchResult: ...


class HttpFetcher:
    """Plain HTTP fetcher (no JavaScript rendering).

    Network errors and timeouts are reported as ``status=None`` with the error
    recorded on the trace, never raised.
    """

    def __init__(self, user_agent: str | None = None, client: httpx.AsyncClient | None = None):
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> HttpFetcher:
        if self._client is None:
            self._client = httpx.AsyncClient(
                follow_redirects=True,
                headers={
                    "user-agent": self.user_agent,
                    "accept": "text/html,application/xhtml+xml,application/json;q=0.9,*/*;q=0.8",
                    "accept-language": "sv-SE,sv;q=0.9,en;q=0.8",
                },
                timeout=httpx.Timeout(DEFAULT_TIMEOUT_MS / 1000),
            )
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> FetchResult:
        if self._client is None:
            await self.__aenter__()

        start = perf_counter()
        try:
            resp = await self._client.get(url, timeout=httpx.Timeout(timeout_ms / 1000))
        except httpx.TimeoutException as exc:
            return self._failed(url, start, f"timeout after {timeout_ms}ms ({exc.__class__.__name__})")
        except httpx.HTTPError as exc:
            return self._failed(url, start, f"{exc.__class__.__name__}: {exc}")

        duration_ms = int((perf_counter() - start) * 1000)
        final_url = str(resp.url)
        logger.debug("GET %s -> %s in %dms", url, resp.status_code, duration_ms)
        return FetchResult(
            status=resp.status_code,
            body=resp.text,
            final_url=final_url,
            trace=FetchTrace(
                url=url,
                status=resp.status_code,
                duration_ms=duration_ms,
                final_url=final_url,
            ),
        )

    @staticmethod
    def _failed(url: str, start: float, error: str) -> FetchResult:
        duration_ms = int((perf_counter() - start) * 1000)
        logger.debug("GET %s failed in %dms: %s", url, duration_ms, error)
        return FetchResult(
            status=None,
            body="",
            final_url=None,
            trace=FetchTrace(url=url, status=None, duration_ms=duration_ms, error=error),
        )
