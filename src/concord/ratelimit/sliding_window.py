"""Sliding-window log rate limiting.

Uses sorted sets to implement exact sliding window counting: every admitted
event is a member scored by its timestamp, entries older than the window are
purged before each decision. Unlike fixed windows there is no boundary
where up to twice the limit can slip through. Memory is bounded by the
limit per identifier.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable

from concord.errors import InvalidArgumentError
from concord.ratelimit.base import RateLimiter, RateLimitResult
from concord.store.executor import ScriptExecutor
from concord.store.keys import StoreKeys
from concord.store.scripts import SLIDING_WINDOW


class SlidingWindowRateLimiter(RateLimiter):
    """Admits at most ``limit`` units in any trailing ``window_ms`` interval.

    Example:
        limiter = SlidingWindowRateLimiter(limit=100, window_ms=60_000)
        result = await limiter.allow("ip:10.0.0.1")
    """

    algorithm = "sliding-window"

    def __init__(
        self,
        limit: int,
        window_ms: int,
        executor: ScriptExecutor | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InvalidArgumentError("limit must be an integer >= 1")
        if isinstance(window_ms, bool) or not isinstance(window_ms, int) or window_ms < 1:
            raise InvalidArgumentError("window_ms must be an integer >= 1")

        super().__init__(executor=executor, clock=clock)
        self.limit = limit
        self.window_ms = window_ms

    @property
    def max_cost(self) -> int:
        return self.limit

    async def allow(self, identifier: str, cost: int = 1) -> RateLimitResult:
        self._validate(identifier, cost)

        allowed, remaining = await self.executor.execute(
            SLIDING_WINDOW,
            keys=[StoreKeys.sliding_window(identifier)],
            args=[self.limit, self.window_ms, cost, self._now_ms(), secrets.token_hex(8)],
        )

        result = RateLimitResult(allowed=bool(int(allowed)), remaining=max(0, int(remaining)))
        return self._record(identifier, result)

    async def reset(self, identifier: str) -> None:
        await self.executor.call("delete", StoreKeys.sliding_window(identifier))
