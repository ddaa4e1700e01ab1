"""
Rate limiting package.

Holds the lazily refilled token bucket limiter, the per action-class
policies and the Redis bucket store used when limits must be shared
across replicas.
"""

from .policies import DEFAULT_POLICIES, RateLimitPolicy, load_policies
from .token_bucket import RateLimitDecision, TokenBucketRateLimiter, refill_bucket


def create_rate_limiter(config, store, metrics=None) -> TokenBucketRateLimiter:
    """Build the limiter selected by ``config.bucket_backend``.

    ``store`` is the record store; it doubles as the bucket store unless
    Redis is configured.
    """
    policies = load_policies(config.rate_limits_file)
    bucket_store = store
    if config.bucket_backend == "redis":
        from .redis_store import RedisBucketStore, bucket_ttl_seconds
        bucket_store = RedisBucketStore(config.redis_url, ttl_seconds=bucket_ttl_seconds(policies.values()))
    elif config.bucket_backend != "store":
        raise ValueError(f"Unknown bucket backend: {config.bucket_backend}")

    return TokenBucketRateLimiter(
        bucket_store,
        policies=policies,
        fail_open=config.rate_limit_fail_open,
        metrics=metrics,
    )


__all__ = [
    "DEFAULT_POLICIES",
    "RateLimitDecision",
    "RateLimitPolicy",
    "TokenBucketRateLimiter",
    "create_rate_limiter",
    "load_policies",
    "refill_bucket",
]
