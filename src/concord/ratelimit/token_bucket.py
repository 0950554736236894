"""Token bucket rate limiting.

Suited to bursty traffic that should average out to a steady rate, with
O(1) state per identifier: a hash holding the fractional token count and
the time of the last refill.
"""

from __future__ import annotations

import math
from collections.abc import Callable

from concord.errors import InvalidArgumentError
from concord.ratelimit.base import RateLimiter, RateLimitResult
from concord.store.executor import ScriptExecutor
from concord.store.keys import StoreKeys
from concord.store.scripts import TOKEN_BUCKET


class TokenBucketRateLimiter(RateLimiter):
    """Refills ``refill_rate`` tokens per second up to ``capacity``.

    An unseen identifier starts with a full bucket. State is written back on
    every call, including denials, so refill accounting stays exact under
    sustained denial.

    Example:
        limiter = TokenBucketRateLimiter(capacity=5, refill_rate=1.0)
        result = await limiter.allow("api-key:abc")
        if not result.allowed:
            ...
    """

    algorithm = "token-bucket"

    def __init__(
        self,
        capacity: int,
        refill_rate: float,
        executor: ScriptExecutor | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
            raise InvalidArgumentError("capacity must be an integer >= 1")
        if refill_rate <= 0:
            raise InvalidArgumentError("refill_rate must be > 0")

        super().__init__(executor=executor, clock=clock)
        self.capacity = capacity
        self.refill_rate = float(refill_rate)

    @property
    def max_cost(self) -> int:
        return self.capacity

    async def allow(self, identifier: str, cost: int = 1) -> RateLimitResult:
        self._validate(identifier, cost)

        allowed, tokens = await self.executor.execute(
            TOKEN_BUCKET,
            keys=[StoreKeys.token_bucket(identifier)],
            args=[self.capacity, repr(self.refill_rate), cost, self._now_ms()],
        )

        result = RateLimitResult(
            allowed=bool(int(allowed)),
            remaining=max(0, math.floor(float(tokens))),
        )
        return self._record(identifier, result)

    async def reset(self, identifier: str) -> None:
        await self.executor.call("delete", StoreKeys.token_bucket(identifier))
