"""HTTP fetcher with timeout, retry, backoff and request pacing."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .config import ScrapingConfig
from .errors import FetchError
from .logging_config import get_logger

logger = get_logger("http_client")

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})
RATE_LIMIT_STATUS = 429
DNS_FAILURE_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated with hostname",
)


@dataclass
class FetchStats:
    """Counters updated by every fetch made on behalf of a caller."""

    http_requests: int = 0
    retry_attempts: int = 0
    failures: int = 0


class HTTPClient:
    """HTTP client wrapper with retry logic, timeout, and exponential backoff.

    ``max_retries`` is the total number of attempts made for one URL, so the
    number of retries recorded for a call is at most ``max_retries - 1``.
    """

    def __init__(self, config: Optional[ScrapingConfig] = None) -> None:
        self.config = config or ScrapingConfig()
        self.timeout = httpx.Timeout(
            connect=10.0,
            read=self.config.timeout_seconds,
            write=10.0,
            pool=5.0,
        )
        self.headers = {
            "User-Agent": self.config.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/json;q=0.9,*/*;q=0.8",
        }

    async def fetch(
        self,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        stats: Optional[FetchStats] = None,
    ) -> str:
        """Return the body of ``url`` as text, raising ``FetchError`` on failure."""
        response = await self.get(url, params=params, headers=headers, stats=stats)
        return response.text

    async def get(
        self,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[httpx.Auth | tuple] = None,
        follow_redirects: bool = True,
        stats: Optional[FetchStats] = None,
    ) -> httpx.Response:
        merged_headers = {**self.headers, **(headers or {})}
        max_attempts = self.config.max_retries
        retries = 0

        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=follow_redirects,
        ) as client:
            for attempt in range(1, max_attempts + 1):
                if stats:
                    stats.http_requests += 1
                try:
                    response = await client.request(
                        "GET",
                        url,
                        headers=merged_headers,
                        params=params,
                        auth=auth,
                    )
                    response.raise_for_status()
                    return response

                except httpx.HTTPStatusError as exc:
                    status_code = exc.response.status_code
                    if self._should_retry_status(status_code) and attempt < max_attempts:
                        delay = self._calculate_retry_delay(attempt)
                        if status_code == RATE_LIMIT_STATUS:
                            delay *= self.config.rate_limit_multiplier
                        retries += 1
                        if stats:
                            stats.retry_attempts += 1
                        logger.warning(
                            "GET %s failed with status %s. Retrying in %.2fs (attempt %s/%s)",
                            url,
                            status_code,
                            delay,
                            attempt,
                            max_attempts,
                        )
                        await asyncio.sleep(delay)
                        continue

                    transient = self._should_retry_status(status_code)
                    logger.error("GET %s failed with status %s after %s attempts", url, status_code, attempt)
                    if stats:
                        stats.failures += 1
                    raise FetchError(
                        url,
                        f"HTTP {status_code}",
                        status_code=status_code,
                        attempts=attempt,
                        retries=retries,
                        transient=transient,
                    ) from exc

                except httpx.InvalidURL as exc:
                    if stats:
                        stats.failures += 1
                    raise FetchError(url, f"Invalid URL: {exc}", attempts=attempt, retries=retries) from exc

                except httpx.TransportError as exc:
                    transient = self._is_transient_error(exc)
                    if transient and attempt < max_attempts:
                        delay = self._calculate_retry_delay(attempt)
                        retries += 1
                        if stats:
                            stats.retry_attempts += 1
                        logger.warning(
                            "GET %s failed (%s). Retrying in %.2fs (attempt %s/%s)",
                            url,
                            exc.__class__.__name__,
                            delay,
                            attempt,
                            max_attempts,
                        )
                        await asyncio.sleep(delay)
                        continue

                    logger.error("GET %s failed after %s attempts: %s", url, attempt, exc)
                    if stats:
                        stats.failures += 1
                    raise FetchError(
                        url,
                        f"{exc.__class__.__name__}: {exc}",
                        attempts=attempt,
                        retries=retries,
                        transient=transient,
                    ) from exc

        raise FetchError(url, "Request failed after retries", attempts=max_attempts, retries=retries)

    def _should_retry_status(self, status_code: int) -> bool:
        if status_code >= 500:
            return True
        return status_code in RETRYABLE_STATUS_CODES

    def _is_transient_error(self, exc: httpx.TransportError) -> bool:
        if isinstance(exc, httpx.TimeoutException):
            return True
        if isinstance(exc, httpx.ConnectError):
            message = str(exc).lower()
            return not any(marker in message for marker in DNS_FAILURE_MARKERS)
        return isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError))

    def _calculate_retry_delay(self, retry_number: int) -> float:
        delay = self.config.retry_base_delay * (2 ** (retry_number - 1))
        return min(delay, self.config.retry_max_delay)


class RateLimiter:
    """Enforces a minimum interval between successive calls to ``wait``.

    The first call returns immediately. A limiter belongs to one session;
    sessions never share one.
    """

    def __init__(
        self,
        min_interval_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        self.min_interval = max(0.0, float(min_interval_seconds))
        self._clock = clock
        self._sleep = sleep
        self._last_call: Optional[float] = None

    async def wait(self) -> float:
        """Sleep until the interval has elapsed and return the time waited."""
        waited = 0.0
        if self._last_call is not None and self.min_interval > 0:
            remaining = self.min_interval - (self._clock() - self._last_call)
            if remaining > 0:
                sleep = self._sleep or asyncio.sleep
                await sleep(remaining)
                waited = remaining
        self._last_call = self._clock()
        return waited

    def reset(self) -> None:
        self._last_call = None
