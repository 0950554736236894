"""Tests for rate limit policies and the per-class registry."""

from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from concord.errors import InvalidArgumentError
from concord.ratelimit import (
    RateLimiterRegistry,
    RateLimitPolicy,
    SlidingWindowRateLimiter,
    TokenBucketRateLimiter,
    create_rate_limiter,
)


class TestRateLimitPolicy:
    """Tests for RateLimitPolicy validation."""

    def test_token_bucket_policy(self) -> None:
        policy = RateLimitPolicy(
            algorithm="token-bucket",
            capacity_or_limit=100,
            refill_rate_per_sec_or_window_ms=2.5,
        )
        assert policy.capacity_or_limit == 100

    def test_unknown_algorithm(self) -> None:
        with pytest.raises(ValidationError):
            RateLimitPolicy(
                algorithm="leaky-bucket",  # type: ignore[arg-type]
                capacity_or_limit=1,
                refill_rate_per_sec_or_window_ms=1,
            )

    @pytest.mark.parametrize("capacity,rate", [(0, 1.0), (1, 0), (1, -1.0)])
    def test_out_of_range(self, capacity: int, rate: float) -> None:
        with pytest.raises(ValidationError):
            RateLimitPolicy(
                algorithm="token-bucket",
                capacity_or_limit=capacity,
                refill_rate_per_sec_or_window_ms=rate,
            )

    def test_window_must_be_whole_ms(self) -> None:
        with pytest.raises(ValidationError):
            RateLimitPolicy(
                algorithm="sliding-window",
                capacity_or_limit=5,
                refill_rate_per_sec_or_window_ms=1000.5,
            )

    def test_extra_fields_forbidden(self) -> None:
        with pytest.raises(ValidationError):
            RateLimitPolicy(
                algorithm="token-bucket",
                capacity_or_limit=5,
                refill_rate_per_sec_or_window_ms=1,
                burst=10,  # type: ignore[call-arg]
            )


class TestCreateRateLimiter:
    """Tests for create_rate_limiter."""

    def test_token_bucket(self) -> None:
        limiter = create_rate_limiter(
            RateLimitPolicy(
                algorithm="token-bucket",
                capacity_or_limit=5,
                refill_rate_per_sec_or_window_ms=1,
            ),
            executor=AsyncMock(),
        )
        assert isinstance(limiter, TokenBucketRateLimiter)
        assert limiter.capacity == 5
        assert limiter.refill_rate == 1.0

    def test_sliding_window(self) -> None:
        limiter = create_rate_limiter(
            RateLimitPolicy(
                algorithm="sliding-window",
                capacity_or_limit=3,
                refill_rate_per_sec_or_window_ms=60000,
            ),
            executor=AsyncMock(),
        )
        assert isinstance(limiter, SlidingWindowRateLimiter)
        assert limiter.limit == 3
        assert limiter.window_ms == 60000


class TestRateLimiterRegistry:
    """Tests for RateLimiterRegistry."""

    @pytest.fixture
    def mock_executor(self) -> AsyncMock:
        executor = AsyncMock()
        executor.execute = AsyncMock(return_value=[1, 2])
        return executor

    @pytest.fixture
    def registry(self, mock_executor: AsyncMock) -> RateLimiterRegistry:
        return RateLimiterRegistry(
            {
                "api-key": RateLimitPolicy(
                    algorithm="token-bucket",
                    capacity_or_limit=10,
                    refill_rate_per_sec_or_window_ms=1,
                ),
                "login": RateLimitPolicy(
                    algorithm="sliding-window",
                    capacity_or_limit=3,
                    refill_rate_per_sec_or_window_ms=60000,
                ),
            },
            executor=mock_executor,
        )

    def test_limiter_per_class(self, registry: RateLimiterRegistry) -> None:
        assert isinstance(registry.limiter("api-key"), TokenBucketRateLimiter)
        assert isinstance(registry.limiter("login"), SlidingWindowRateLimiter)

    def test_unknown_class(self, registry: RateLimiterRegistry) -> None:
        with pytest.raises(InvalidArgumentError):
            registry.limiter("tenant")

    @pytest.mark.asyncio
    async def test_identifiers_namespaced_by_class(
        self, registry: RateLimiterRegistry, mock_executor: AsyncMock
    ) -> None:
        await registry.allow("login", "bob")

        keys = mock_executor.execute.await_args.kwargs["keys"]
        assert keys == ["concord:ratelimit:sw:login:bob"]
