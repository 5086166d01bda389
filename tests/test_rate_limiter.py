"""Tests for the per-issuer hourly alert throttle."""

from datetime import datetime, timezone

import pytest

from watchpost.issuers.base import ScanIssuer
from watchpost.services.rate_limiter import (
    DatabaseRateLimitStore,
    MemoryRateLimitStore,
    RateLimiter,
    RedisRateLimitStore,
    bucket_key,
    build_rate_limiter,
)


class NoisyScan(ScanIssuer):
    name = "noisy"
    rate_limited = True

    async def detect(self):
        return []


class QuietScan(ScanIssuer):
    name = "quiet"

    async def detect(self):
        return []


class FakeRedis:
    """Just the counter commands the Redis store uses."""

    def __init__(self):
        self.values: dict[str, int] = {}
        self.expiry: dict[str, int] = {}

    async def incr(self, key):
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    async def expire(self, key, seconds):
        self.expiry[key] = seconds

    async def get(self, key):
        value = self.values.get(key)
        return str(value) if value is not None else None


def test_bucket_key_is_hourly():
    assert bucket_key(datetime(2024, 3, 5, 7, 59, tzinfo=timezone.utc)) == "2024-03-05-07"


@pytest.mark.asyncio
async def test_cap_within_one_hour(settings, clock):
    limiter = RateLimiter(MemoryRateLimitStore(), settings, clock)
    results = []
    for _ in range(5):
        results.append(await limiter.check("noisy", 3))
        clock.advance(minutes=1)
    assert results == [True, True, True, False, False]
    assert await limiter.current("noisy") == 3


@pytest.mark.asyncio
async def test_new_hour_opens_a_fresh_bucket(settings, clock):
    limiter = RateLimiter(MemoryRateLimitStore(), settings, clock)
    assert await limiter.check("noisy", 1)
    assert not await limiter.check("noisy", 1)
    clock.advance(hours=1)
    assert await limiter.check("noisy", 1)


@pytest.mark.asyncio
async def test_buckets_are_per_issuer(settings, clock):
    limiter = RateLimiter(MemoryRateLimitStore(), settings, clock)
    assert await limiter.check("a", 1)
    assert await limiter.check("b", 1)
    assert not await limiter.check("a", 1)


@pytest.mark.asyncio
async def test_no_limit_is_never_throttled(settings, clock):
    limiter = RateLimiter(MemoryRateLimitStore(), settings, clock)
    for _ in range(50):
        assert await limiter.check("quiet", None)


def test_limit_resolution_order(settings):
    settings.max_alerts_per_hour = 10
    settings.rate_limit_overrides = {"quiet": 4}
    limiter = RateLimiter(settings=settings)

    assert limiter.limit_for("noisy", NoisyScan({"max_alerts_per_hour": 2})) == 2
    assert limiter.limit_for("quiet", QuietScan()) == 4
    assert limiter.limit_for("noisy", NoisyScan()) == 10
    assert limiter.limit_for("other", QuietScan()) is None
    assert limiter.limit_for("unregistered") is None


@pytest.mark.asyncio
async def test_old_buckets_are_pruned(settings, clock):
    store = MemoryRateLimitStore()
    limiter = RateLimiter(store, settings, clock)
    await limiter.check("noisy", 5)
    old_bucket = bucket_key(clock.now)

    clock.advance(hours=30)
    await limiter.check("noisy", 5)
    assert await store.current("noisy", old_bucket) == 0


@pytest.mark.asyncio
async def test_database_store(session_factory, settings, clock):
    store = DatabaseRateLimitStore(session_factory)
    limiter = RateLimiter(store, settings, clock)
    assert [await limiter.check("noisy", 2) for _ in range(3)] == [True, True, False]
    assert await limiter.current("noisy") == 2

    old_bucket = bucket_key(clock.now)
    clock.advance(hours=25)
    assert await limiter.check("noisy", 2)
    assert await store.current("noisy", old_bucket) == 0


@pytest.mark.asyncio
async def test_redis_store(settings, clock):
    redis = FakeRedis()
    limiter = RateLimiter(RedisRateLimitStore(redis), settings, clock)
    assert [await limiter.check("noisy", 2) for _ in range(3)] == [True, True, False]
    assert await limiter.current("noisy") == 3
    key = f"watchpost:ratelimit:noisy:{bucket_key(clock.now)}"
    assert redis.expiry[key] == 86400


def test_build_rate_limiter_picks_store(settings, session_factory):
    settings.rate_limit_backend = "database"
    assert isinstance(build_rate_limiter(settings, session_factory).store, DatabaseRateLimitStore)
    settings.rate_limit_backend = "redis"
    assert isinstance(build_rate_limiter(settings, redis=FakeRedis()).store, RedisRateLimitStore)
    settings.rate_limit_backend = "memory"
    assert isinstance(build_rate_limiter(settings).store, MemoryRateLimitStore)
    settings.rate_limit_backend = "database"
    with pytest.raises(ValueError):
        build_rate_limiter(settings)
