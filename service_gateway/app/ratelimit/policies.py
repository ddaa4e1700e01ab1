"""
Per action-class bucket sizes.
"""

from dataclasses import dataclass
from typing import Dict, Optional

import yaml

from shared.logging import get_logger


logger = get_logger("gateway.rate_limit_policies")


@dataclass(frozen=True)
class RateLimitPolicy:
    """A bucket of ``capacity`` tokens refilled evenly over ``period_seconds``."""
    capacity: int
    period_seconds: float

    def __post_init__(self):
        if self.capacity < 1:
            raise ValueError("capacity must be at least 1")
        if self.period_seconds <= 0:
            raise ValueError("period_seconds must be positive")

    def tokens_for(self, elapsed: float) -> float:
        # Multiply before dividing so whole-token boundaries land exactly
        return elapsed * self.capacity / self.period_seconds

    def seconds_for(self, tokens: float) -> float:
        return tokens * self.period_seconds / self.capacity


HOUR = 3600.0
MINUTE = 60.0

DEFAULT_POLICIES: Dict[str, RateLimitPolicy] = {
    "register": RateLimitPolicy(capacity=5, period_seconds=HOUR),
    "deposit": RateLimitPolicy(capacity=5, period_seconds=HOUR),
    "order": RateLimitPolicy(capacity=30, period_seconds=MINUTE),
    "message": RateLimitPolicy(capacity=20, period_seconds=MINUTE),
    "social": RateLimitPolicy(capacity=10, period_seconds=MINUTE),
}


def load_policies(path: Optional[str] = None) -> Dict[str, RateLimitPolicy]:
    """Default policies, overridden by a YAML file when one is given.

    File format::

        deposit:
          capacity: 10
          period_seconds: 3600
    """
    policies = dict(DEFAULT_POLICIES)
    if not path:
        return policies

    with open(path, "r", encoding="utf-8") as f:
        overrides = yaml.safe_load(f) or {}

    if not isinstance(overrides, dict):
        raise ValueError(f"{path}: expected a mapping of action classes")

    for action_class, entry in overrides.items():
        if not isinstance(entry, dict):
            raise ValueError(f"{path}: entry for {action_class!r} must be a mapping")
        policies[str(action_class)] = RateLimitPolicy(
            capacity=int(entry["capacity"]),
            period_seconds=float(entry["period_seconds"]),
        )

    logger.info("Loaded rate limit overrides", path=path, classes=sorted(overrides))
    return policies
