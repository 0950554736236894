"""Tests for the sliding-window log rate limiter."""

from unittest.mock import AsyncMock

import pytest

from concord.errors import InvalidArgumentError
from concord.ratelimit import SlidingWindowRateLimiter
from concord.store.scripts import SLIDING_WINDOW


class TestSlidingWindowRateLimiter:
    """Tests for SlidingWindowRateLimiter with a mocked executor."""

    @pytest.fixture
    def mock_executor(self) -> AsyncMock:
        """Create mock script executor."""
        executor = AsyncMock()
        executor.execute = AsyncMock(return_value=[1, 9])
        executor.call = AsyncMock(return_value=1)
        return executor

    @pytest.fixture
    def limiter(self, mock_executor: AsyncMock) -> SlidingWindowRateLimiter:
        return SlidingWindowRateLimiter(limit=10, window_ms=60_000, executor=mock_executor)

    @pytest.mark.parametrize("limit,window", [(0, 1000), (5, 0), (5, 10.5), (True, 1000)])
    def test_invalid_config(self, limit, window) -> None:
        with pytest.raises(InvalidArgumentError):
            SlidingWindowRateLimiter(limit=limit, window_ms=window, executor=AsyncMock())

    @pytest.mark.asyncio
    async def test_allow_runs_script(
        self, limiter: SlidingWindowRateLimiter, mock_executor: AsyncMock
    ) -> None:
        result = await limiter.allow("ip:10.0.0.1")

        assert result.allowed is True
        assert result.remaining == 9

        call = mock_executor.execute.await_args
        assert call.args[0] is SLIDING_WINDOW
        assert call.kwargs["keys"] == ["concord:ratelimit:sw:ip:10.0.0.1"]
        limit, window, cost, now, nonce = call.kwargs["args"]
        assert (limit, window, cost, now) == (10, 60_000, 1, 0)
        assert len(nonce) == 16

    @pytest.mark.asyncio
    async def test_nonce_differs_per_call(
        self, limiter: SlidingWindowRateLimiter, mock_executor: AsyncMock
    ) -> None:
        """Events within the same millisecond stay distinct members."""
        await limiter.allow("ip:10.0.0.1")
        await limiter.allow("ip:10.0.0.1")

        first, second = (c.kwargs["args"][4] for c in mock_executor.execute.await_args_list)
        assert first != second

    @pytest.mark.asyncio
    async def test_denied(
        self, limiter: SlidingWindowRateLimiter, mock_executor: AsyncMock
    ) -> None:
        mock_executor.execute.return_value = [0, 0]

        result = await limiter.allow("ip:10.0.0.1")

        assert result.allowed is False
        assert result.remaining == 0

    @pytest.mark.asyncio
    async def test_cost_above_limit_rejected(
        self, limiter: SlidingWindowRateLimiter, mock_executor: AsyncMock
    ) -> None:
        with pytest.raises(InvalidArgumentError):
            await limiter.allow("ip:10.0.0.1", cost=11)

        mock_executor.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_reset(
        self, limiter: SlidingWindowRateLimiter, mock_executor: AsyncMock
    ) -> None:
        await limiter.reset("ip:10.0.0.1")

        mock_executor.call.assert_awaited_once_with("delete", "concord:ratelimit:sw:ip:10.0.0.1")
