"""
Platform API rate limiters using the token bucket algorithm.

Every adapter instance owns one bucket shared by all of its outbound
calls, so pagination, detail fetches and mutations draw from the same
budget. Two backends:

- TokenBucket: in-process, asyncio-aware. Enough for a single worker.
- RedisTokenBucket: global across workers, atomic Lua script. Fails open
  when Redis is unavailable so a cache outage does not stop syncing.

Rates use the Celery notation: "5/s", "30/m", "1000/h". A bucket with
capacity 1 and "5/s" enforces a fixed 200 ms minimum spacing, which is
what platforms that throttle without per-response headers need.

Usage:
    limiter = build_rate_limiter("ebay", settings)
    await limiter.acquire()  # waits until a token is available
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Tuple

import redis
import redis.asyncio as aioredis

logger = logging.getLogger("rate_limiter")

# Redis key prefix for platform rate limiters
REDIS_KEY_PREFIX = "platform_bridge:rate_limiter"

DEFAULT_CAPACITY = 1
DEFAULT_MAX_WAIT = 120.0

_PERIODS = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hour": 3600}

# Lua script for atomic token acquisition
# This ensures consistency across multiple workers
ACQUIRE_TOKEN_SCRIPT = """
local tokens_key = KEYS[1]
local last_refill_key = KEYS[2]
local capacity = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local refill_interval = tonumber(ARGV[3])
local now = tonumber(ARGV[4])

-- Get current state (default to full bucket)
local tokens = tonumber(redis.call('GET', tokens_key) or capacity)
local last_refill = tonumber(redis.call('GET', last_refill_key) or now)

-- Calculate tokens to add based on elapsed time
local elapsed = math.max(0, now - last_refill)
local tokens_per_second = refill_rate / refill_interval
tokens = math.min(capacity, tokens + elapsed * tokens_per_second)

redis.call('SET', last_refill_key, now)

if tokens >= 1 then
    tokens = tokens - 1
    redis.call('SET', tokens_key, tokens)
    return {1, '0', tostring(tokens)}
else
    local wait_time = (1 - tokens) / tokens_per_second
    redis.call('SET', tokens_key, tokens)
    return {0, tostring(wait_time), tostring(tokens)}
end
"""


def parse_rate(rate: str) -> Tuple[int, float]:
    """
    Parse a Celery-style rate string.

    Returns (requests, interval_seconds). "5/s" -> (5, 1.0).
    Raises ValueError on malformed input.
    """
    try:
        count_part, _, period_part = rate.strip().partition("/")
        count = int(count_part)
        period = _PERIODS[(period_part or "s").strip().lower()]
    except (KeyError, ValueError) as exc:
        raise ValueError(f"invalid rate limit {rate!r}") from exc
    if count <= 0:
        raise ValueError(f"invalid rate limit {rate!r}")
    return count, float(period)


class TokenBucket:
    """In-process token bucket; concurrent waiters are served in arrival order."""

    def __init__(
        self,
        refill_rate: float,
        refill_interval: float = 1.0,
        capacity: int = DEFAULT_CAPACITY,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._capacity = float(capacity)
        self._tokens_per_second = refill_rate / refill_interval
        self._tokens = float(capacity)
        self._clock = clock
        self._sleep = sleep
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    @classmethod
    def from_rate(cls, rate: str, capacity: int = DEFAULT_CAPACITY, **kwargs) -> "TokenBucket":
        count, interval = parse_rate(rate)
        return cls(refill_rate=count, refill_interval=interval, capacity=capacity, **kwargs)

    @property
    def min_interval(self) -> float:
        return 1.0 / self._tokens_per_second

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._tokens_per_second)
        self._last_refill = now

    def try_acquire(self) -> Tuple[bool, float]:
        """Take a token if available. Returns (success, wait_seconds)."""
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True, 0.0
        return False, (1 - self._tokens) / self._tokens_per_second

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                ok, wait_time = self.try_acquire()
                if ok:
                    return
                logger.debug("rate limiter waiting %.3fs", wait_time)
                await self._sleep(wait_time)


class RedisTokenBucket:
    """
    Global token bucket shared by every worker through Redis.

    Workers call acquire() before each platform request. The Lua script
    makes refill-and-take atomic, so two workers never spend the same token.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        refill_rate: float,
        refill_interval: float = 1.0,
        capacity: int = DEFAULT_CAPACITY,
        key_prefix: str = REDIS_KEY_PREFIX,
        max_wait: float = DEFAULT_MAX_WAIT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._redis = redis_client
        self._capacity = capacity
        self._refill_rate = refill_rate
        self._refill_interval = refill_interval
        self._tokens_key = f"{key_prefix}:tokens"
        self._last_refill_key = f"{key_prefix}:last_refill"
        self._max_wait = max_wait
        self._sleep = sleep

        self._acquire_script = self._redis.register_script(ACQUIRE_TOKEN_SCRIPT)

        logger.info(
            "RedisTokenBucket initialized key=%s capacity=%s rate=%s/%ss",
            key_prefix, capacity, refill_rate, refill_interval,
        )

    async def try_acquire(self) -> Tuple[bool, float]:
        """
        Try to acquire a token from the bucket.

        Returns:
            Tuple of (success, wait_time_seconds)
        """
        try:
            result = await self._acquire_script(
                keys=[self._tokens_key, self._last_refill_key],
                args=[self._capacity, self._refill_rate, self._refill_interval, time.time()],
            )
            return bool(int(result[0])), float(result[1])
        except redis.RedisError as e:
            logger.error("redis error in rate limiter, allowing request: %s", e)
            return True, 0.0

    async def acquire(self) -> None:
        waited = 0.0
        while True:
            ok, wait_time = await self.try_acquire()
            if ok:
                return
            if waited + wait_time > self._max_wait:
                logger.warning("rate limiter gave up waiting after %.2fs key=%s", waited, self._tokens_key)
                return
            await self._sleep(wait_time)
            waited += wait_time

    async def reset(self) -> None:
        """Reset the bucket to full capacity."""
        try:
            await self._redis.set(self._tokens_key, self._capacity)
            await self._redis.set(self._last_refill_key, time.time())
        except redis.RedisError as e:
            logger.error("redis error in rate limiter reset: %s", e)


def build_rate_limiter(
    platform: str,
    settings,
    scope: Optional[str] = None,
    redis_client: Optional[aioredis.Redis] = None,
):
    """
    Bucket for one adapter instance.

    ``scope`` narrows the Redis key to a single store or seller so two
    merchants on the same platform do not share a budget.
    """
    rate = settings.rate_limit_for(platform)
    count, interval = parse_rate(rate)
    if settings.rate_limit_backend == "redis":
        client = redis_client or aioredis.Redis.from_url(settings.redis_url, decode_responses=True)
        key = f"{REDIS_KEY_PREFIX}:{platform}:{scope or 'default'}"
        return RedisTokenBucket(client, refill_rate=count, refill_interval=interval, key_prefix=key)
    return TokenBucket(refill_rate=count, refill_interval=interval)
