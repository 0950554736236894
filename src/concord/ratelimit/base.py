"""Rate limiter interface.

Both algorithms share one contract, ``allow(identifier, cost) ->
RateLimitResult``, and run their whole read-check-write sequence as one
Lua script. Deciding in application code between a read and a write would
let concurrent callers all read before any of them writes.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import ClassVar

from concord.errors import InvalidArgumentError
from concord.observability.metrics import record_rate_limit_decision
from concord.store.executor import ScriptExecutor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check.

    Attributes:
        allowed: Whether the request may proceed.
        remaining: Whole units still available after this decision.
    """

    allowed: bool
    remaining: int


class RateLimiter(ABC):
    """Redis-backed rate limiter.

    Args:
        executor: Script executor (a default one on the shared client when None)
        clock: Time source returning UNIX seconds. When None the Redis server
            clock is used, so every process shares one time base.
    """

    algorithm: ClassVar[str]

    def __init__(
        self,
        executor: ScriptExecutor | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.executor = executor or ScriptExecutor()
        self._clock = clock

    @property
    @abstractmethod
    def max_cost(self) -> int:
        """Largest cost a single call could ever be granted."""

    @abstractmethod
    async def allow(self, identifier: str, cost: int = 1) -> RateLimitResult:
        """Consume ``cost`` units for ``identifier`` if available."""

    @abstractmethod
    async def reset(self, identifier: str) -> None:
        """Forget all state for ``identifier``."""

    def _now_ms(self) -> int:
        """Caller-side time in ms, or 0 to let the script read the server clock."""
        if self._clock is None:
            return 0
        return int(self._clock() * 1000)

    def _validate(self, identifier: str, cost: int) -> None:
        if not isinstance(identifier, str) or not identifier:
            raise InvalidArgumentError("Rate limit identifier must be a non-empty string")
        if isinstance(cost, bool) or not isinstance(cost, int) or cost < 1:
            raise InvalidArgumentError(f"cost must be a positive integer, got {cost!r}")
        if cost > self.max_cost:
            raise InvalidArgumentError(
                f"cost {cost} exceeds {self.algorithm} maximum of {self.max_cost}"
            )

    def _record(self, identifier: str, result: RateLimitResult) -> RateLimitResult:
        record_rate_limit_decision(self.algorithm, result.allowed)
        if not result.allowed:
            logger.debug(f"Rate limited '{identifier}' ({self.algorithm})")
        return result
