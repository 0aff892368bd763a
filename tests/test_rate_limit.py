from __future__ import annotations

import pytest

from sitesnap.rate_limit import SlidingWindowRateLimiter, parse_limit_spec


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_two_per_second_allows_two_then_rejects_then_recovers():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock=clock)

    first = await limiter.admit("acme", "2/second")
    clock.now += 0.2
    second = await limiter.admit("acme", "2/second")
    clock.now += 0.2
    third = await limiter.admit("acme", "2/second")

    assert first.allowed and first.remaining == 1
    assert second.allowed and second.remaining == 0
    assert not third.allowed
    assert third.retry_after_seconds >= 1
    assert third.headers()["Retry-After"] == str(third.retry_after_seconds)

    clock.now = 1001.05
    fourth = await limiter.admit("acme", "2/second")
    assert fourth.allowed


@pytest.mark.asyncio
async def test_rejections_are_not_recorded_in_the_window():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock=clock)

    await limiter.admit("acme", "1/second")
    for _ in range(5):
        clock.now += 0.1
        assert not (await limiter.admit("acme", "1/second")).allowed

    clock.now = 1001.0
    assert (await limiter.admit("acme", "1/second")).allowed


@pytest.mark.asyncio
async def test_callers_have_independent_windows():
    limiter = SlidingWindowRateLimiter(clock=FakeClock())

    assert (await limiter.admit("acme", "1/minute")).allowed
    assert not (await limiter.admit("acme", "1/minute")).allowed
    decision = await limiter.admit("globex", "1/minute")

    assert decision.allowed
    assert decision.headers()["X-RateLimit-Window"] == "1m"
    assert limiter.tracked_keys() == 2


@pytest.mark.asyncio
async def test_minute_window_retry_after_counts_down():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock=clock)

    await limiter.admit("acme", "1/minute")
    clock.now += 45
    rejected = await limiter.admit("acme", "1/minute")

    assert not rejected.allowed
    assert rejected.retry_after_seconds == 15


def test_invalid_spec_falls_back_to_ten_per_second():
    for spec in ("", "ten/second", "5/hour", "0/second", "5 per minute"):
        parsed = parse_limit_spec(spec)
        assert (parsed.requests, parsed.window_seconds) == (10, 1.0)
    parsed = parse_limit_spec("30/minute")
    assert (parsed.requests, parsed.window_seconds) == (30, 60.0)


@pytest.mark.asyncio
async def test_prune_drops_idle_callers():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock=clock, idle_window_s=60)

    await limiter.admit("idle", "5/second")
    clock.now += 30
    await limiter.admit("busy", "5/second")
    clock.now += 31

    assert limiter.prune() == 1
    assert limiter.tracked_keys() == 1
