"""Rate limit policies per identifier class.

A policy names the algorithm and its two parameters. Identifier classes
(e.g. "api-key", "ip", "tenant") each get their own policy and limiter:

    registry = RateLimiterRegistry(
        {
            "api-key": RateLimitPolicy(
                algorithm="token-bucket",
                capacity_or_limit=100,
                refill_rate_per_sec_or_window_ms=10,
            ),
            "login": RateLimitPolicy(
                algorithm="sliding-window",
                capacity_or_limit=5,
                refill_rate_per_sec_or_window_ms=60_000,
            ),
        }
    )
    result = await registry.allow("login", "user@example.com")
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from concord.errors import InvalidArgumentError
from concord.ratelimit.base import RateLimiter, RateLimitResult
from concord.ratelimit.sliding_window import SlidingWindowRateLimiter
from concord.ratelimit.token_bucket import TokenBucketRateLimiter
from concord.store.executor import ScriptExecutor

Algorithm = Literal["token-bucket", "sliding-window"]


class RateLimitPolicy(BaseModel):
    """Configuration for one identifier class.

    ``capacity_or_limit`` is the bucket capacity (token bucket) or the
    maximum count per window (sliding window). The second parameter is the
    refill rate in tokens per second (token bucket) or the window length in
    milliseconds (sliding window).
    """

    model_config = {"frozen": True, "extra": "forbid"}

    algorithm: Algorithm
    capacity_or_limit: int = Field(ge=1)
    refill_rate_per_sec_or_window_ms: float = Field(gt=0)

    @model_validator(mode="after")
    def _window_is_whole_ms(self) -> "RateLimitPolicy":
        if self.algorithm == "sliding-window" and not float(
            self.refill_rate_per_sec_or_window_ms
        ).is_integer():
            raise ValueError("sliding-window window must be a whole number of milliseconds")
        return self


def create_rate_limiter(
    policy: RateLimitPolicy,
    executor: ScriptExecutor | None = None,
    clock: Callable[[], float] | None = None,
) -> RateLimiter:
    """Build the limiter described by ``policy``."""
    if policy.algorithm == "token-bucket":
        return TokenBucketRateLimiter(
            capacity=policy.capacity_or_limit,
            refill_rate=policy.refill_rate_per_sec_or_window_ms,
            executor=executor,
            clock=clock,
        )

    if policy.algorithm == "sliding-window":
        return SlidingWindowRateLimiter(
            limit=policy.capacity_or_limit,
            window_ms=int(policy.refill_rate_per_sec_or_window_ms),
            executor=executor,
            clock=clock,
        )

    raise InvalidArgumentError(
        "Unsupported rate limit algorithm. Supported values: token-bucket, sliding-window."
    )


class RateLimiterRegistry:
    """Routes ``allow`` calls to the limiter configured for an identifier class.

    Identifiers are namespaced by class, so the same identifier under two
    classes is limited independently.
    """

    def __init__(
        self,
        policies: Mapping[str, RateLimitPolicy],
        executor: ScriptExecutor | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        executor = executor or ScriptExecutor()
        self.policies = dict(policies)
        self._limiters: dict[str, RateLimiter] = {
            name: create_rate_limiter(policy, executor=executor, clock=clock)
            for name, policy in self.policies.items()
        }

    def limiter(self, identifier_class: str) -> RateLimiter:
        """Limiter for ``identifier_class``."""
        try:
            return self._limiters[identifier_class]
        except KeyError:
            raise InvalidArgumentError(
                f"No rate limit policy for identifier class '{identifier_class}'"
            ) from None

    async def allow(
        self, identifier_class: str, identifier: str, cost: int = 1
    ) -> RateLimitResult:
        """Check ``identifier`` against the policy of ``identifier_class``."""
        limiter = self.limiter(identifier_class)
        return await limiter.allow(f"{identifier_class}:{identifier}", cost)

    async def reset(self, identifier_class: str, identifier: str) -> None:
        """Forget the state of ``identifier`` under ``identifier_class``."""
        await self.limiter(identifier_class).reset(f"{identifier_class}:{identifier}")
