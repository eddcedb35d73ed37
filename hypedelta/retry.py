"""Retry, rate limiting and endpoint fallback for external calls."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Sequence, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")
E = TypeVar("E")

RETRYABLE_HTTP_CODES = {429, 500, 502, 503, 504}
RETRYABLE_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    ConnectionError,
    TimeoutError,
)
RETRYABLE_SDK_ERRORS = (
    "RateLimitError", "OverloadedError",
    "InternalServerError", "APIConnectionError",
)


def _backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    return min(base_delay * (2**attempt), max_delay)


async def retry_async(
    fn,
    *args,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    **kwargs,
):
    """Call an async function with exponential backoff on transient failures.

    Retries on:
    - httpx timeout/connection errors
    - HTTP 429 (rate limit) and 5xx (server errors), honouring Retry-After
    - anthropic rate limit / overloaded errors
    """
    last_exc = None
    for attempt in range(max_retries + 1):
        try:
            return await fn(*args, **kwargs)
        except RETRYABLE_EXCEPTIONS as exc:
            last_exc = exc
            if attempt == max_retries:
                break
            delay = _backoff(attempt, base_delay, max_delay)
            logger.warning(
                "Retry %d/%d after %s: %s (waiting %.1fs)",
                attempt + 1, max_retries, type(exc).__name__, exc, delay,
            )
            await asyncio.sleep(delay)
        except httpx.HTTPStatusError as exc:
            last_exc = exc
            if exc.response.status_code not in RETRYABLE_HTTP_CODES:
                raise
            if attempt == max_retries:
                break
            delay = _backoff(attempt, base_delay, max_delay)
            retry_after = exc.response.headers.get("retry-after")
            if retry_after:
                try:
                    delay = min(float(retry_after), max_delay)
                except ValueError:
                    pass
            logger.warning(
                "Retry %d/%d after HTTP %d (waiting %.1fs)",
                attempt + 1, max_retries,
                exc.response.status_code, delay,
            )
            await asyncio.sleep(delay)
        except Exception as exc:
            exc_name = type(exc).__name__
            if exc_name not in RETRYABLE_SDK_ERRORS:
                raise
            last_exc = exc
            if attempt == max_retries:
                break
            delay = _backoff(attempt, base_delay, max_delay)
            logger.warning(
                "Retry %d/%d after %s (waiting %.1fs)",
                attempt + 1, max_retries, exc_name, delay,
            )
            await asyncio.sleep(delay)

    raise last_exc  # type: ignore[misc]


class RateLimiter:
    """Enforce a minimum interval between calls to the same endpoint key.

    State is in-memory and per-process; nothing survives a restart.
    """

    def __init__(
        self,
        min_interval: float = 0.0,
        intervals: dict[str, float] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_interval = min_interval
        self.intervals = dict(intervals or {})
        self._clock = clock
        self._last: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def interval_for(self, key: str) -> float:
        return self.intervals.get(key, self.min_interval)

    async def acquire(self, key: str) -> None:
        """Wait until the key's interval has elapsed since its last acquire."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            interval = self.interval_for(key)
            last = self._last.get(key)
            if last is not None and interval > 0:
                wait = interval - (self._clock() - last)
                if wait > 0:
                    logger.debug("Rate limit %s: waiting %.2fs", key, wait)
                    await asyncio.sleep(wait)
            self._last[key] = self._clock()


async def call_with_fallback(
    endpoints: Sequence[E],
    fn: Callable[[E], Awaitable[T]],
) -> T:
    """Try fn on each endpoint in order; raise the last error if all fail."""
    if not endpoints:
        raise ValueError("call_with_fallback requires at least one endpoint")

    last_exc: Exception | None = None
    for i, endpoint in enumerate(endpoints):
        try:
            return await fn(endpoint)
        except Exception as exc:
            last_exc = exc
            if i < len(endpoints) - 1:
                logger.warning(
                    "Endpoint %s failed (%s: %s), falling back to %s",
                    endpoint, type(exc).__name__, exc, endpoints[i + 1],
                )
            else:
                logger.warning(
                    "Endpoint %s failed (%s: %s), no fallbacks left",
                    endpoint, type(exc).__name__, exc,
                )

    raise last_exc  # type: ignore[misc]
