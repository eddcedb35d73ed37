"""Tests for retry, rate limiting and endpoint fallback."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from hypedelta.retry import RateLimiter, call_with_fallback, retry_async


@pytest.mark.asyncio
async def test_retry_succeeds_on_first_try():
    """No retries needed when function succeeds."""
    call_count = 0

    async def fn():
        nonlocal call_count
        call_count += 1
        return "ok"

    result = await retry_async(fn)
    assert result == "ok"
    assert call_count == 1


@pytest.mark.asyncio
async def test_retry_succeeds_after_transient_failure():
    """Retries on transient error and eventually succeeds."""
    call_count = 0

    async def fn():
        nonlocal call_count
        call_count += 1
        if call_count < 3:
            raise ConnectionError("transient")
        return "ok"

    result = await retry_async(fn, max_retries=3, base_delay=0.01)
    assert result == "ok"
    assert call_count == 3


@pytest.mark.asyncio
async def test_retry_exhausts_retries():
    """Raises after max retries exhausted."""

    async def fn():
        raise TimeoutError("always fails")

    with pytest.raises(TimeoutError, match="always fails"):
        await retry_async(fn, max_retries=2, base_delay=0.01)


@pytest.mark.asyncio
async def test_retry_does_not_retry_non_transient():
    """Non-retryable exceptions are raised immediately."""
    call_count = 0

    async def fn():
        nonlocal call_count
        call_count += 1
        raise ValueError("bad input")

    with pytest.raises(ValueError, match="bad input"):
        await retry_async(fn, max_retries=3, base_delay=0.01)
    assert call_count == 1


@pytest.mark.asyncio
async def test_retry_on_429_but_not_404():
    request = httpx.Request("GET", "https://example.com")
    calls = []

    async def fn(status):
        calls.append(status)
        if len(calls) == 1:
            raise httpx.HTTPStatusError(
                "err", request=request, response=httpx.Response(status, request=request),
            )
        return "ok"

    assert await retry_async(fn, 429, base_delay=0.01) == "ok"
    assert len(calls) == 2

    calls.clear()
    with pytest.raises(httpx.HTTPStatusError):
        await retry_async(fn, 404, base_delay=0.01)
    assert len(calls) == 1


@pytest.mark.asyncio
@patch("hypedelta.retry.asyncio.sleep", new_callable=AsyncMock)
async def test_rate_limiter_waits_out_interval(mock_sleep):
    now = [100.0]
    limiter = RateLimiter(intervals={"arxiv": 2.0}, clock=lambda: now[0])

    await limiter.acquire("arxiv")
    mock_sleep.assert_not_awaited()

    now[0] = 100.5
    await limiter.acquire("arxiv")
    mock_sleep.assert_awaited_once_with(1.5)


@pytest.mark.asyncio
@patch("hypedelta.retry.asyncio.sleep", new_callable=AsyncMock)
async def test_rate_limiter_keys_are_independent(mock_sleep):
    limiter = RateLimiter(min_interval=10.0, clock=lambda: 50.0)
    await limiter.acquire("a")
    await limiter.acquire("b")
    mock_sleep.assert_not_awaited()
    assert limiter.interval_for("a") == 10.0


@pytest.mark.asyncio
async def test_fallback_returns_first_success():
    tried = []

    async def fn(endpoint):
        tried.append(endpoint)
        if endpoint == "primary":
            raise httpx.ConnectError("down")
        return f"from {endpoint}"

    result = await call_with_fallback(["primary", "secondary", "tertiary"], fn)
    assert result == "from secondary"
    assert tried == ["primary", "secondary"]


@pytest.mark.asyncio
async def test_fallback_tries_each_endpoint_once_and_raises_last():
    tried = []

    async def fn(endpoint):
        tried.append(endpoint)
        raise RuntimeError(f"{endpoint} failed")

    with pytest.raises(RuntimeError, match="c failed"):
        await call_with_fallback(["a", "b", "c"], fn)
    assert tried == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_fallback_requires_endpoints():
    async def fn(endpoint):
        return endpoint

    with pytest.raises(ValueError):
        await call_with_fallback([], fn)
