"""HTTP client service — pooled httpx.AsyncClient with timeout, retry and backoff."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlparse

import httpx

from playlist_ingest.errors import (
    FetchTimeout,
    HttpStatusError,
    NetworkUnreachable,
    ParseError,
    RetriesExhausted,
    TransportError,
    ValidationError,
)

logger = logging.getLogger(__name__)

HEADERS = {
    "User-Agent": "PlaylistIngest/1.0",
    "Accept": "*/*",
    "Accept-Language": "en-US,en;q=0.9",
    "Connection": "keep-alive",
}

# Bodies shorter than this are surfaced as the error message.
MAX_DIAGNOSTIC_BODY = 500


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 5.0) -> float:
    """Delay before retry number *attempt* (1-based): base, 2*base, 4*base ... capped."""
    return min(base * (2 ** (attempt - 1)), cap)


def validate_url(url: str) -> str:
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"Invalid URL: {url!r}")
    return url


class HttpClientService:
    """Manages a global httpx.AsyncClient with connection pooling.

    ``fetch_text`` / ``fetch_json`` are the resilient GETs every other
    component goes through. *transport* is only set by tests.
    """

    def __init__(
        self,
        user_agent: Optional[str] = None,
        backoff_base: float = 1.0,
        backoff_cap: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client: Optional[httpx.AsyncClient] = None
        self._transport = transport
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.headers = dict(HEADERS)
        if user_agent:
            self.headers["User-Agent"] = user_agent

    async def get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers=self.headers,
                timeout=httpx.Timeout(connect=30.0, read=600.0, write=30.0, pool=30.0),
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
            logger.info("Global HTTP client closed")

    # ------------------------------------------------------------------
    # Single attempt
    # ------------------------------------------------------------------

    async def _get_once(
        self, url: str, params: Optional[dict], timeout: float, headers: Optional[dict]
    ) -> str:
        client = await self.get_client()
        try:
            response = await client.get(url, params=params, headers=headers, timeout=timeout)
        except httpx.TimeoutException as e:
            raise FetchTimeout(
                f"Request timed out after {timeout:g} seconds. Please check your internet connection."
            ) from e
        except httpx.TransportError as e:
            raise NetworkUnreachable(
                f"Network request failed. Please check your internet connection and try again. ({e})"
            ) from e

        if 200 <= response.status_code < 300:
            return response.text

        body = response.text or ""
        detail = body if body and len(body) < MAX_DIAGNOSTIC_BODY else (response.reason_phrase or "Unknown error")
        logger.error(f"Server error {response.status_code}: {body[:200]}")
        raise HttpStatusError(response.status_code, body, f"Server returned {response.status_code}: {detail}")

    # ------------------------------------------------------------------
    # Resilient GET
    # ------------------------------------------------------------------

    async def fetch_text(
        self,
        url: str,
        *,
        params: Optional[dict] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        headers: Optional[dict] = None,
    ) -> str:
        url = validate_url(url)
        if timeout <= 0:
            raise ValidationError("timeout must be positive")
        if max_retries < 0:
            raise ValidationError("max_retries must not be negative")

        attempts = max_retries + 1
        last_error: Optional[TransportError] = None
        for attempt in range(1, attempts + 1):
            try:
                logger.info(f"HTTP GET (attempt {attempt}/{attempts}): {url}")
                return await self._get_once(url, params, timeout, headers)
            except TransportError as e:
                if not e.retryable:
                    logger.error(f"Non-retryable error: {e}")
                    raise
                last_error = e
                logger.warning(f"Attempt {attempt} failed: {e}")
            if attempt < attempts:
                delay = backoff_delay(attempt, self.backoff_base, self.backoff_cap)
                logger.info(f"Waiting {delay:.1f}s before retry...")
                await asyncio.sleep(delay)

        logger.error(f"All {attempts} attempt(s) failed for {url}")
        raise RetriesExhausted(last_error, attempts)

    async def fetch_json(self, url: str, **kwargs) -> Any:
        text = await self.fetch_text(url, **kwargs)
        try:
            return json.loads(text)
        except (json.JSONDecodeError, TypeError) as e:
            logger.error(f"Failed to parse JSON response: {e}")
            raise ParseError("Invalid JSON response from server") from e


async def gather_in_batches(
    factories: list[Callable[[], Awaitable[Any]]],
    batch_size: int = 5,
    pause: float = 0.3,
) -> list[Any]:
    """Run coroutine factories at most *batch_size* at a time.

    Results keep input order. A failing call yields its exception in place of
    a result so the caller can merge outcomes once everything has finished.
    """
    batch_size = max(1, batch_size)
    results: list[Any] = []
    for i in range(0, len(factories), batch_size):
        batch = factories[i:i + batch_size]
        results.extend(await asyncio.gather(*(f() for f in batch), return_exceptions=True))
        if i + batch_size < len(factories) and pause > 0:
            await asyncio.sleep(pause)
    return results
