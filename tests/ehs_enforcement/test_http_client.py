"""Tests for the HTTP fetcher and rate limiter."""

import time

import httpx
import pytest

from src.ehs_enforcement.config import ScrapingConfig
from src.ehs_enforcement.errors import FetchError
from src.ehs_enforcement.http_client import FetchStats, HTTPClient, RateLimiter


def make_dummy_client(responses, attempts):
    """AsyncClient stand-in replaying ``responses`` (status codes or exceptions)."""

    class DummyAsyncClient:
        def __init__(self, *args, **kwargs):
            self.kwargs = kwargs

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def request(self, method, url, **kwargs):
            attempts.append(kwargs)
            outcome = responses[min(len(attempts), len(responses)) - 1]
            request = httpx.Request(method, url)
            if isinstance(outcome, Exception):
                raise outcome
            return httpx.Response(outcome, request=request, text=f"body {outcome}")

    return DummyAsyncClient


@pytest.fixture
def sleeps(monkeypatch):
    recorded = []

    async def fake_sleep(delay):
        recorded.append(delay)

    monkeypatch.setattr("src.ehs_enforcement.http_client.asyncio.sleep", fake_sleep)
    return recorded


@pytest.mark.asyncio
async def test_fetch_succeeds_on_third_attempt_with_two_retries(monkeypatch, sleeps):
    attempts = []
    monkeypatch.setattr(
        "src.ehs_enforcement.http_client.httpx.AsyncClient",
        make_dummy_client([500, 502, 200], attempts),
    )

    client = HTTPClient(ScrapingConfig(max_retries=3, retry_base_delay=1.0))
    stats = FetchStats()
    body = await client.fetch("https://example.com/case", stats=stats)

    assert body == "body 200"
    assert len(attempts) == 3
    assert stats.http_requests == 3
    assert stats.retry_attempts == 2
    assert stats.failures == 0
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_fetch_raises_after_exhausting_attempts(monkeypatch, sleeps):
    attempts = []
    monkeypatch.setattr(
        "src.ehs_enforcement.http_client.httpx.AsyncClient",
        make_dummy_client([503], attempts),
    )

    client = HTTPClient(ScrapingConfig(max_retries=3, retry_base_delay=0.5))
    stats = FetchStats()
    with pytest.raises(FetchError) as excinfo:
        await client.fetch("https://example.com/case", stats=stats)

    error = excinfo.value
    assert error.status_code == 503
    assert error.attempts == 3
    assert error.retries == 2
    assert error.transient is True
    assert len(attempts) == 3
    assert stats.failures == 1


@pytest.mark.asyncio
async def test_client_error_is_not_retried(monkeypatch, sleeps):
    attempts = []
    monkeypatch.setattr(
        "src.ehs_enforcement.http_client.httpx.AsyncClient",
        make_dummy_client([404], attempts),
    )

    with pytest.raises(FetchError) as excinfo:
        await HTTPClient(ScrapingConfig()).fetch("https://example.com/missing")

    assert excinfo.value.status_code == 404
    assert excinfo.value.attempts == 1
    assert excinfo.value.transient is False
    assert len(attempts) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_rate_limited_response_backs_off_longer(monkeypatch, sleeps):
    attempts = []
    monkeypatch.setattr(
        "src.ehs_enforcement.http_client.httpx.AsyncClient",
        make_dummy_client([429, 429, 200], attempts),
    )

    config = ScrapingConfig(retry_base_delay=1.0, rate_limit_multiplier=3.0)
    await HTTPClient(config).fetch("https://example.com/list")

    assert sleeps == [3.0, 6.0]


@pytest.mark.asyncio
async def test_backoff_delay_is_capped(monkeypatch, sleeps):
    attempts = []
    monkeypatch.setattr(
        "src.ehs_enforcement.http_client.httpx.AsyncClient",
        make_dummy_client([500, 500, 500, 200], attempts),
    )

    config = ScrapingConfig(max_retries=4, retry_base_delay=2.0, retry_max_delay=5.0)
    await HTTPClient(config).fetch("https://example.com/list")

    assert sleeps == [2.0, 4.0, 5.0]


@pytest.mark.asyncio
async def test_timeouts_are_retried(monkeypatch, sleeps):
    attempts = []
    timeout = httpx.ConnectTimeout("timed out")
    monkeypatch.setattr(
        "src.ehs_enforcement.http_client.httpx.AsyncClient",
        make_dummy_client([timeout, 200], attempts),
    )

    body = await HTTPClient(ScrapingConfig()).fetch("https://example.com/slow")

    assert body == "body 200"
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_dns_failure_is_permanent(monkeypatch, sleeps):
    attempts = []
    dns_error = httpx.ConnectError("[Errno -2] Name or service not known")
    monkeypatch.setattr(
        "src.ehs_enforcement.http_client.httpx.AsyncClient",
        make_dummy_client([dns_error], attempts),
    )

    with pytest.raises(FetchError) as excinfo:
        await HTTPClient(ScrapingConfig()).fetch("https://no-such-host.invalid/")

    assert excinfo.value.transient is False
    assert excinfo.value.attempts == 1
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_request_passes_params_and_user_agent(monkeypatch, sleeps):
    attempts = []
    monkeypatch.setattr(
        "src.ehs_enforcement.http_client.httpx.AsyncClient",
        make_dummy_client([200], attempts),
    )

    config = ScrapingConfig(user_agent="test-agent/1.0")
    await HTTPClient(config).fetch("https://example.com/list", params={"PN": 2})

    assert attempts[0]["params"] == {"PN": 2}
    assert attempts[0]["headers"]["User-Agent"] == "test-agent/1.0"


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.now += seconds


@pytest.mark.asyncio
async def test_rate_limiter_spaces_five_calls_by_four_intervals():
    clock = FakeClock()
    limiter = RateLimiter(3.0, clock=clock, sleep=clock.sleep)

    start = clock()
    for _ in range(5):
        await limiter.wait()

    assert clock() - start >= 12.0


@pytest.mark.asyncio
async def test_rate_limiter_first_call_does_not_wait():
    clock = FakeClock()
    limiter = RateLimiter(3.0, clock=clock, sleep=clock.sleep)

    assert await limiter.wait() == 0.0
    clock.now += 1.0
    assert await limiter.wait() == pytest.approx(2.0)
    clock.now += 5.0
    assert await limiter.wait() == 0.0

    limiter.reset()
    assert await limiter.wait() == 0.0


@pytest.mark.asyncio
async def test_rate_limiter_with_real_clock():
    limiter = RateLimiter(0.05)
    started = time.monotonic()
    for _ in range(3):
        await limiter.wait()
    assert time.monotonic() - started >= 0.09


@pytest.mark.asyncio
async def test_rate_limiters_are_independent():
    clock = FakeClock()
    first = RateLimiter(3.0, clock=clock, sleep=clock.sleep)
    second = RateLimiter(3.0, clock=clock, sleep=clock.sleep)

    await first.wait()
    assert await second.wait() == 0.0
