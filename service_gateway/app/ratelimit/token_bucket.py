"""
Token bucket rate limiter.

Buckets refill lazily on read: there is no timer, so a bucket is fully
described by (tokens, capacity, last_refill) and can live in any store
that supports a versioned conditional write.
"""

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from shared.errors import RateLimitError, StoreUnavailableError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.store import BucketState, BucketStore

from .policies import DEFAULT_POLICIES, RateLimitPolicy


@dataclass
class RateLimitDecision:
    """Outcome of one admission check."""
    allowed: bool
    action_class: str
    limit: int
    remaining: int
    retry_after_seconds: float
    degraded: bool = False

    def to_headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.retry_after_seconds)),
        }


def refill_bucket(state: BucketState, policy: RateLimitPolicy, now: float) -> BucketState:
    """Add tokens for the time elapsed since the last refill, capped at capacity."""
    elapsed = max(0.0, now - state.last_refill)
    capacity = float(policy.capacity)
    tokens = min(capacity, max(0.0, state.tokens) + policy.tokens_for(elapsed))
    state.capacity = capacity
    state.tokens = tokens
    state.last_refill = max(state.last_refill, now)
    return state


class TokenBucketRateLimiter:
    """Admission control with one bucket per (subject, action class)."""

    def __init__(self,
                 store: BucketStore,
                 policies: Optional[Dict[str, RateLimitPolicy]] = None,
                 fail_open: bool = False,
                 clock: Callable[[], float] = time.time,
                 max_cas_attempts: int = 5,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.policies = dict(policies or DEFAULT_POLICIES)
        self.fail_open = fail_open
        self.clock = clock
        self.max_cas_attempts = max_cas_attempts
        self.metrics = metrics
        self.logger = get_logger("gateway.rate_limiter")

    def get_policy(self, action_class: str) -> RateLimitPolicy:
        policy = self.policies.get(action_class)
        if policy is None:
            raise ValidationError(
                f"Unknown action class: {action_class}",
                details={"action_class": action_class}
            )
        return policy

    async def check_and_consume(self, subject: str, action_class: str) -> RateLimitDecision:
        """Refill, then take one token if available."""
        policy = self.get_policy(action_class)

        try:
            for _ in range(self.max_cas_attempts):
                now = self.clock()
                stored = await self.store.load_bucket(subject, action_class)
                expected_version = stored.version if stored else 0
                bucket = refill_bucket(stored or self._new_bucket(subject, action_class, policy, now), policy, now)

                if bucket.tokens < 1.0:
                    decision = self._decision(False, action_class, policy, bucket.tokens)
                    self._record(decision)
                    self.logger.warning(
                        "Rate limit exceeded",
                        subject=subject,
                        action_class=action_class,
                        retry_after=decision.retry_after_seconds
                    )
                    return decision

                updated = bucket.next_version(tokens=bucket.tokens - 1.0)
                if await self.store.compare_and_swap_bucket(updated, expected_version):
                    decision = self._decision(True, action_class, policy, updated.tokens)
                    self._record(decision)
                    return decision

                self.logger.debug("Bucket write lost race, retrying", subject=subject, action_class=action_class)

            raise StoreUnavailableError(
                "Rate limit bucket under contention",
                details={"subject": subject, "action_class": action_class}
            )

        except StoreUnavailableError as e:
            return self._on_store_failure(subject, action_class, policy, e)

    async def enforce(self, subject: str, action_class: str) -> RateLimitDecision:
        """check_and_consume, raising RateLimitError on rejection."""
        decision = await self.check_and_consume(subject, action_class)
        if not decision.allowed:
            retry_after = math.ceil(decision.retry_after_seconds)
            raise RateLimitError(
                f"Rate limit exceeded for {action_class}. Try again in {retry_after} seconds.",
                details={
                    "action_class": action_class,
                    "limit": decision.limit,
                    "remaining": decision.remaining,
                    "retry_after": retry_after,
                }
            )
        return decision

    async def get_status(self, subject: str, action_class: str) -> RateLimitDecision:
        """Current bucket view without consuming a token."""
        policy = self.get_policy(action_class)
        now = self.clock()
        stored = await self.store.load_bucket(subject, action_class)
        bucket = refill_bucket(stored or self._new_bucket(subject, action_class, policy, now), policy, now)
        return self._decision(bucket.tokens >= 1.0, action_class, policy, bucket.tokens)

    async def reset(self, subject: str, action_class: str) -> None:
        """Drop a bucket so the subject starts with full capacity."""
        self.get_policy(action_class)
        await self.store.delete_bucket(subject, action_class)
        self.logger.info("Rate limit reset", subject=subject, action_class=action_class)

    def _new_bucket(self, subject: str, action_class: str, policy: RateLimitPolicy, now: float) -> BucketState:
        return BucketState(
            subject=subject,
            action_class=action_class,
            capacity=float(policy.capacity),
            tokens=float(policy.capacity),
            last_refill=now,
            version=0,
        )

    def _decision(self, allowed: bool, action_class: str, policy: RateLimitPolicy, tokens: float) -> RateLimitDecision:
        retry_after = 0.0 if tokens >= 1.0 else policy.seconds_for(1.0 - tokens)
        return RateLimitDecision(
            allowed=allowed,
            action_class=action_class,
            limit=policy.capacity,
            remaining=int(math.floor(tokens)),
            retry_after_seconds=retry_after,
        )

    def _on_store_failure(self, subject: str, action_class: str, policy: RateLimitPolicy,
                          error: StoreUnavailableError) -> RateLimitDecision:
        self.logger.error(
            "Rate limit store failure",
            subject=subject,
            action_class=action_class,
            fail_open=self.fail_open,
            error=str(error)
        )
        if self.fail_open:
            decision = RateLimitDecision(True, action_class, policy.capacity, policy.capacity, 0.0, degraded=True)
        else:
            decision = RateLimitDecision(False, action_class, policy.capacity, 0, policy.seconds_for(1.0), degraded=True)
        self._record(decision)
        return decision

    def _record(self, decision: RateLimitDecision) -> None:
        if self.metrics:
            outcome = "allowed" if decision.allowed else "rejected"
            if decision.degraded:
                outcome += "_degraded"
            self.metrics.increment_counter(
                "rate_limit_decisions_total",
                action_class=decision.action_class,
                outcome=outcome
            )
