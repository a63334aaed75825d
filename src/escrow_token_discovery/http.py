"""Rate-limited JSON-over-HTTP client with retry and exponential backoff.

Used by the block explorer and market-data clients. Each instance wraps a
single aiohttp session and a single `RateLimiter`, so one upstream never
receives more than its configured budget.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

import aiohttp

from escrow_token_discovery.ratelimit import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 1.0
DEFAULT_REQUEST_TIMEOUT = 30
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)


class HttpClientError(Exception):
    """Raised when an HTTP request fails after all retries."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class _RetryableStatus(Exception):
    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"HTTP {status}: {body[:200]}")
        self.status = status


class HttpClient:
    """Thin aiohttp wrapper that rate limits and retries GET requests."""

    def __init__(
        self,
        *,
        rate_limiter: RateLimiter,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT,
        headers: Mapping[str, str] | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._rate_limiter = rate_limiter
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._headers = dict(headers or {})
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=self._headers)
        return self._session

    async def get_json(self, url: str, *, params: Mapping[str, Any] | None = None) -> Any:
        """GET `url` and decode the JSON body.

        Raises:
            HttpClientError: On a non-retryable status or once retries are exhausted.
        """
        last_error: Exception | None = None
        delay = self._retry_base_delay

        for attempt in range(self._max_retries + 1):
            await self._rate_limiter.acquire()
            try:
                return await self._get_once(url, params)
            except (_RetryableStatus, aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
                if attempt == self._max_retries:
                    break
                logger.warning(
                    "GET %s failed (attempt %d/%d): %s. Retrying in %.1f seconds...",
                    url,
                    attempt + 1,
                    self._max_retries + 1,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= 2

        status = last_error.status if isinstance(last_error, _RetryableStatus) else None
        raise HttpClientError(
            f"GET {url} failed after {self._max_retries + 1} attempts: {last_error}",
            status=status,
        )

    async def _get_once(self, url: str, params: Mapping[str, Any] | None) -> Any:
        session = self._get_session()
        async with session.get(url, params=params) as response:
            if response.status in RETRY_STATUS_CODES:
                raise _RetryableStatus(response.status, await response.text())
            if response.status >= 400:
                body = await response.text()
                raise HttpClientError(f"HTTP {response.status}: {body[:200]}", status=response.status)
            return await response.json(content_type=None)

    async def aclose(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None
