"""Tests for the sliding-window limiter and retry timing."""
from email.utils import format_datetime
from datetime import datetime, timezone

import pytest

from deep_research.tools.rate_limiter import SlidingWindowRateLimiter, backoff_delay_ms, parse_retry_after_ms


def test_limiter_waits_for_oldest_request_to_leave_window():
    now = [0]
    limiter = SlidingWindowRateLimiter(rpm=2, clock=lambda: now[0])
    assert limiter.check_rate_limit() == 0
    limiter.record()
    now[0] = 1_000
    limiter.record()
    assert limiter.check_rate_limit() == 59_100
    now[0] = 60_001
    assert limiter.check_rate_limit() == 0


def test_parse_retry_after_seconds_and_dates():
    assert parse_retry_after_ms("2") == 2000
    assert parse_retry_after_ms("") is None
    assert parse_retry_after_ms("soon") is None
    when = datetime(2030, 1, 1, tzinfo=timezone.utc)
    assert parse_retry_after_ms(format_datetime(when, usegmt=True), now=when.timestamp() - 3) == 3000


def test_backoff_is_exponential_and_honors_retry_after():
    assert backoff_delay_ms(1, jitter=lambda: 0) == 500
    assert backoff_delay_ms(3, jitter=lambda: 100) == 2100
    assert backoff_delay_ms(1, retry_after_ms=5000, jitter=lambda: 0) == 5000


@pytest.mark.asyncio
async def test_acquire_sleeps_until_a_slot_frees():
    now = [0]
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now[0] += round(seconds * 1000)

    limiter = SlidingWindowRateLimiter(rpm=1, clock=lambda: now[0])
    await limiter.acquire(fake_sleep)
    await limiter.acquire(fake_sleep)

    assert sleeps == [60.1]
    assert limiter.check_rate_limit() > 0
