import asyncio

import pytest

from contact_api.core.exceptions import RateLimitExceeded
from contact_api.services.rate_limiter import FixedWindowRateLimiter, OutboundRateLimiter


@pytest.fixture
def limiter(store, clock):
    return FixedWindowRateLimiter(store, max_requests=3, window_seconds=3600, clock=clock)


@pytest.mark.asyncio
async def test_allows_up_to_limit_then_rejects(limiter):
    statuses = [await limiter.check("contact:1.2.3.4:jean@acme.fr") for _ in range(3)]
    assert [s.remaining for s in statuses] == [2, 1, 0]

    with pytest.raises(RateLimitExceeded) as exc_info:
        await limiter.check("contact:1.2.3.4:jean@acme.fr")
    assert exc_info.value.status_code == 429
    assert exc_info.value.retry_after == 3600
    assert exc_info.value.headers == {"Retry-After": "3600"}


@pytest.mark.asyncio
async def test_rejection_does_not_extend_window(limiter, store, clock):
    key = "contact:1.2.3.4:jean@acme.fr"
    for _ in range(3):
        await limiter.check(key)
    clock.advance(1800)
    for _ in range(5):
        with pytest.raises(RateLimitExceeded):
            await limiter.check(key)

    record = await store.get(f"ratelimit:{key}")
    assert record["count"] == 3

    clock.advance(1800)
    status = await limiter.check(key)
    assert status.remaining == 2


@pytest.mark.asyncio
async def test_window_resets_after_period(limiter, clock):
    for _ in range(3):
        await limiter.check("id")
    clock.advance(3600)
    assert (await limiter.check("id")).remaining == 2


@pytest.mark.asyncio
async def test_identifiers_are_tracked_separately(limiter):
    for _ in range(3):
        await limiter.check("contact:1.2.3.4:a@acme.fr")
    status = await limiter.check("contact:1.2.3.4:b@acme.fr")
    assert status.remaining == 2


@pytest.mark.asyncio
async def test_concurrent_checks_do_not_lose_updates(limiter):
    results = await asyncio.gather(
        *[limiter.check("burst") for _ in range(10)],
        return_exceptions=True,
    )
    allowed = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, RateLimitExceeded)]
    assert len(allowed) == 3
    assert len(rejected) == 7


@pytest.mark.asyncio
async def test_reset_clears_identifier(limiter):
    for _ in range(3):
        await limiter.check("id")
    await limiter.reset("id")
    assert (await limiter.check("id")).remaining == 2


class SleepRecorder:
    def __init__(self, clock):
        self.clock = clock
        self.waits = []

    async def __call__(self, seconds):
        self.waits.append(seconds)
        self.clock.advance(seconds)


@pytest.mark.asyncio
async def test_outbound_limiter_suspends_when_window_full(clock):
    sleep = SleepRecorder(clock)
    limiter = OutboundRateLimiter(max_calls=2, window_seconds=1.0, clock=clock, sleep=sleep)

    await limiter.acquire()
    clock.advance(0.25)
    await limiter.acquire()
    assert sleep.waits == []

    await limiter.acquire()
    assert sleep.waits == [pytest.approx(0.75)]
    assert limiter.window_count == 1


@pytest.mark.asyncio
async def test_outbound_limiter_new_window_needs_no_wait(clock):
    sleep = SleepRecorder(clock)
    limiter = OutboundRateLimiter(max_calls=1, window_seconds=1.0, clock=clock, sleep=sleep)

    await limiter.acquire()
    clock.advance(1.0)
    await limiter.acquire()

    assert sleep.waits == []


@pytest.mark.asyncio
async def test_outbound_limiter_serializes_concurrent_waiters(clock):
    sleep = SleepRecorder(clock)
    limiter = OutboundRateLimiter(max_calls=2, window_seconds=1.0, clock=clock, sleep=sleep)

    await asyncio.gather(*[limiter.acquire() for _ in range(5)])

    # 5 calls at 2 per window: two suspensions of a full window each
    assert sleep.waits == [pytest.approx(1.0), pytest.approx(1.0)]
