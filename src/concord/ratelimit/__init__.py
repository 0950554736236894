"""Rate limiting: token bucket and sliding-window log on Redis.

Both algorithms share the contract ``allow(identifier, cost=1) ->
RateLimitResult(allowed, remaining)``; pick one per identifier class with a
``RateLimitPolicy``.
"""

from concord.ratelimit.base import RateLimiter, RateLimitResult
from concord.ratelimit.policy import (
    RateLimiterRegistry,
    RateLimitPolicy,
    create_rate_limiter,
)
from concord.ratelimit.sliding_window import SlidingWindowRateLimiter
from concord.ratelimit.token_bucket import TokenBucketRateLimiter

__all__ = [
    "RateLimiter",
    "RateLimitResult",
    "RateLimitPolicy",
    "RateLimiterRegistry",
    "create_rate_limiter",
    "SlidingWindowRateLimiter",
    "TokenBucketRateLimiter",
]
