from __future__ import annotations

import pytest

from conftest import UnreachableRedis
from pulse_gateway.models.errors import RateLimitError
from pulse_gateway.services.limit_counter import RateLimiter


class Clock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_third_request_in_window_is_blocked(fake_redis):
    clock = Clock()
    limiter = RateLimiter(redis_client=fake_redis, clock=clock)

    await limiter.check("key_1", 2)
    clock.now += 1
    await limiter.check("key_1", 2)
    clock.now += 1

    with pytest.raises(RateLimitError) as exc_info:
        await limiter.check("key_1", 2)

    assert exc_info.value.retry_after == 58
    assert exc_info.value.limit == 2
    assert exc_info.value.status_code == 429


@pytest.mark.asyncio
async def test_requests_allowed_again_after_window(fake_redis):
    clock = Clock()
    limiter = RateLimiter(redis_client=fake_redis, clock=clock)
    await limiter.check("key_1", 2)
    await limiter.check("key_1", 2)
    with pytest.raises(RateLimitError):
        await limiter.check("key_1", 2)

    clock.now += 61
    status = await limiter.check("key_1", 2)

    assert status is not None
    assert status.remaining == 1


@pytest.mark.asyncio
async def test_rejected_requests_are_not_recorded(fake_redis):
    clock = Clock()
    limiter = RateLimiter(redis_client=fake_redis, clock=clock)
    await limiter.check("key_1", 1)
    for _ in range(3):
        with pytest.raises(RateLimitError):
            await limiter.check("key_1", 1)

    assert await fake_redis.zcard("ratelimit:key_rpm:key_1") == 1


@pytest.mark.asyncio
async def test_keys_have_independent_windows(fake_redis):
    limiter = RateLimiter(redis_client=fake_redis, clock=Clock())
    await limiter.check("key_1", 1)

    assert await limiter.check("key_2", 1) is not None


@pytest.mark.asyncio
@pytest.mark.parametrize("limit", [None, 0])
async def test_no_limit_means_no_tracking(fake_redis, limit):
    limiter = RateLimiter(redis_client=fake_redis)

    assert await limiter.check("key_1", limit) is None
    assert fake_redis.zset_store == {}


@pytest.mark.asyncio
async def test_in_process_window_without_redis():
    clock = Clock()
    limiter = RateLimiter(clock=clock)
    await limiter.check("key_1", 2)
    await limiter.check("key_1", 2)
    with pytest.raises(RateLimitError):
        await limiter.check("key_1", 2)

    clock.now += 60.5
    assert await limiter.check("key_1", 2) is not None


@pytest.mark.asyncio
async def test_store_outage_allows_request():
    limiter = RateLimiter(redis_client=UnreachableRedis(), clock=Clock())

    assert await limiter.check("key_1", 1) is None
    assert await limiter.check("key_1", 1) is None


@pytest.mark.asyncio
async def test_in_process_window_drops_idle_buckets():
    clock = Clock()
    limiter = RateLimiter(clock=clock)
    await limiter.check("key_1", 5)
    await limiter.check("key_2", 5)

    clock.now += 61
    await limiter.check("key_2", 5)

    assert list(limiter._windows) == ["ratelimit:key_rpm:key_2"]
