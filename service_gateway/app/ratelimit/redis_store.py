"""
Redis-backed bucket store.

Each bucket is a hash ``rate_limit:{subject}:{action_class}``. Writes go
through a Lua script that compares the stored version before setting the
new fields, which gives the limiter an atomic conditional write across
gateway replicas.
"""

import math
from typing import Iterable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import StoreUnavailableError
from shared.logging import get_logger
from shared.store import BucketState, BucketStore

from .policies import RateLimitPolicy


COMPARE_AND_SWAP_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'version')
if current == false then
    current = '0'
end
if current ~= ARGV[1] then
    return 0
end
redis.call('HSET', KEYS[1],
    'capacity', ARGV[2],
    'tokens', ARGV[3],
    'last_refill', ARGV[4],
    'version', ARGV[5])
redis.call('EXPIRE', KEYS[1], ARGV[6])
return 1
"""

# An expired bucket is equivalent to a full one, so the TTL must cover
# the longest refill period
DEFAULT_TTL_SECONDS = 24 * 3600


def bucket_ttl_seconds(policies: Iterable[RateLimitPolicy]) -> int:
    longest = max((policy.period_seconds for policy in policies), default=0)
    return max(DEFAULT_TTL_SECONDS, math.ceil(longest))


class RedisBucketStore(BucketStore):
    """Distributed token bucket persistence using Redis."""

    def __init__(self, redis_url: str, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self.logger = get_logger("gateway.rate_limit_store")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _make_key(self, subject: str, action_class: str) -> str:
        """Generate rate limit key."""
        return f"rate_limit:{subject}:{action_class}"

    async def load_bucket(self, subject: str, action_class: str) -> Optional[BucketState]:
        try:
            client = await self._get_redis()
            fields = await client.hgetall(self._make_key(subject, action_class))
        except RedisError as e:
            self.logger.error("Rate limit bucket read error", error=str(e))
            raise StoreUnavailableError("Rate limit store unavailable", details={"error": str(e)}) from e

        if not fields:
            return None

        return BucketState(
            subject=subject,
            action_class=action_class,
            capacity=float(fields["capacity"]),
            tokens=float(fields["tokens"]),
            last_refill=float(fields["last_refill"]),
            version=int(fields["version"]),
        )

    async def compare_and_swap_bucket(self, state: BucketState, expected_version: int) -> bool:
        try:
            client = await self._get_redis()
            result = await client.eval(
                COMPARE_AND_SWAP_SCRIPT,
                1,
                self._make_key(state.subject, state.action_class),
                str(expected_version),
                repr(state.capacity),
                repr(state.tokens),
                repr(state.last_refill),
                str(state.version),
                str(self.ttl_seconds),
            )
        except RedisError as e:
            self.logger.error("Rate limit bucket write error", error=str(e))
            raise StoreUnavailableError("Rate limit store unavailable", details={"error": str(e)}) from e

        return int(result) == 1

    async def delete_bucket(self, subject: str, action_class: str) -> None:
        try:
            client = await self._get_redis()
            await client.delete(self._make_key(subject, action_class))
        except RedisError as e:
            self.logger.error("Rate limit reset error", error=str(e))
            raise StoreUnavailableError("Rate limit store unavailable", details={"error": str(e)}) from e
