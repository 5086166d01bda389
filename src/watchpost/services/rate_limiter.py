"""Per-issuer hourly alert throttle.

Counts are kept in buckets keyed by ``(issuer_name, YYYY-MM-DD-HH)``. A call
takes one slot in the current bucket if fewer than the cap are taken; the
first call of a new hour lands in an empty bucket. Buckets older than 24
hours are pruned.

Three stores share the same contract: in-process memory (single worker),
the ``security_monitor_rate_limits`` table, and Redis ``INCR`` for
deployments with several workers.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timedelta

from watchpost.config import Settings, settings as default_settings
from watchpost.db.base import utcnow
from watchpost.repositories.rate_limit_repo import RateLimitRepository

logger = logging.getLogger(__name__)

BUCKET_RETENTION = timedelta(hours=24)


def bucket_key(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d-%H")


class RateLimitStore(ABC):
    @abstractmethod
    async def try_acquire(self, issuer_name: str, bucket: str, limit: int) -> bool:
        """Take one slot in the bucket unless ``limit`` slots are taken."""
        ...

    @abstractmethod
    async def prune(self, oldest_bucket: str) -> None:
        """Drop buckets that sort before ``oldest_bucket``."""
        ...

    async def current(self, issuer_name: str, bucket: str) -> int:
        return 0


class MemoryRateLimitStore(RateLimitStore):
    """Process-local buckets. The check-and-increment has no await, so it is atomic per event loop."""

    def __init__(self):
        self._buckets: dict[tuple[str, str], int] = {}

    async def try_acquire(self, issuer_name: str, bucket: str, limit: int) -> bool:
        key = (issuer_name, bucket)
        count = self._buckets.get(key, 0)
        if count >= limit:
            return False
        self._buckets[key] = count + 1
        return True

    async def prune(self, oldest_bucket: str) -> None:
        for key in [key for key in self._buckets if key[1] < oldest_bucket]:
            del self._buckets[key]

    async def current(self, issuer_name: str, bucket: str) -> int:
        return self._buckets.get((issuer_name, bucket), 0)


class DatabaseRateLimitStore(RateLimitStore):
    """Buckets in ``security_monitor_rate_limits`` using a conditional atomic increment."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def try_acquire(self, issuer_name: str, bucket: str, limit: int) -> bool:
        async with self._session_factory() as session:
            allowed = await RateLimitRepository(session).try_increment(issuer_name, bucket, limit)
            await session.commit()
        return allowed

    async def prune(self, oldest_bucket: str) -> None:
        async with self._session_factory() as session:
            removed = await RateLimitRepository(session).prune_before(oldest_bucket)
            await session.commit()
        if removed:
            logger.debug("Pruned %d rate limit buckets", removed)

    async def current(self, issuer_name: str, bucket: str) -> int:
        async with self._session_factory() as session:
            return await RateLimitRepository(session).get_count(issuer_name, bucket)


class RedisRateLimitStore(RateLimitStore):
    """Buckets as Redis counters; expiry replaces pruning."""

    def __init__(self, redis, prefix: str = "watchpost:ratelimit"):
        self._redis = redis
        self._prefix = prefix

    def _key(self, issuer_name: str, bucket: str) -> str:
        return f"{self._prefix}:{issuer_name}:{bucket}"

    async def try_acquire(self, issuer_name: str, bucket: str, limit: int) -> bool:
        key = self._key(issuer_name, bucket)
        count = await self._redis.incr(key)
        if count == 1:
            await self._redis.expire(key, int(BUCKET_RETENTION.total_seconds()))
        return count <= limit

    async def prune(self, oldest_bucket: str) -> None:
        return None

    async def current(self, issuer_name: str, bucket: str) -> int:
        value = await self._redis.get(self._key(issuer_name, bucket))
        return int(value) if value else 0


class RateLimiter:
    def __init__(
        self,
        store: RateLimitStore | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store or MemoryRateLimitStore()
        self.settings = settings or default_settings
        self._clock = clock
        self._pruned_for: str | None = None

    def limit_for(self, issuer_name: str, issuer=None) -> int | None:
        """Cap for an issuer: its own option, then the configured override.

        Issuers that declare ``rate_limited`` fall back to the global
        ``max_alerts_per_hour``; all others are not throttled.
        """
        if issuer is not None and issuer.max_alerts_per_hour is not None:
            return issuer.max_alerts_per_hour
        if issuer_name in self.settings.rate_limit_overrides:
            return self.settings.rate_limit_overrides[issuer_name]
        if issuer is not None and getattr(issuer, "rate_limited", False):
            return self.settings.max_alerts_per_hour
        return None

    async def check(self, issuer_name: str, limit: int | None) -> bool:
        """Return True if the event may proceed, consuming one slot."""
        if limit is None:
            return True
        now = self._clock()
        bucket = bucket_key(now)
        if self._pruned_for != bucket:
            await self.store.prune(bucket_key(now - BUCKET_RETENTION))
            self._pruned_for = bucket

        allowed = await self.store.try_acquire(issuer_name, bucket, limit)
        if not allowed:
            logger.info("Rate limit reached for %s (%d/hour, bucket %s)", issuer_name, limit, bucket)
        return allowed

    async def current(self, issuer_name: str) -> int:
        return await self.store.current(issuer_name, bucket_key(self._clock()))


def build_rate_limiter(settings: Settings, session_factory=None, redis=None) -> RateLimiter:
    """Pick the store named by ``settings.rate_limit_backend``."""
    backend = settings.rate_limit_backend
    if backend == "database":
        if session_factory is None:
            raise ValueError("database rate limiting needs a session factory")
        store: RateLimitStore = DatabaseRateLimitStore(session_factory)
    elif backend == "redis":
        if redis is None:
            import redis.asyncio as aioredis

            redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        store = RedisRateLimitStore(redis)
    else:
        store = MemoryRateLimitStore()
    return RateLimiter(store, settings)
