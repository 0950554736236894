"""Leader election for distributed background workers.

Built on the lock manager: leadership is a lease on ``leader:{name}``.
This ensures only one instance runs certain background tasks at a time,
such as scheduled cleanup jobs or periodic aggregation.

The election is lease-based:
1. Candidates try to acquire the lease with a TTL
2. The leader extends the lease periodically (token-checked)
3. If the leader dies, the lease expires and another instance can claim it

Example:
    async with LeaderElection("cleanup-job") as leader:
        if leader.is_leader:
            await run_cleanup()

    # Or as a continuous election
    election = LeaderElection("background-worker")
    await election.start()

    while running:
        if election.is_leader:
            await do_leader_work()
        await asyncio.sleep(1)

    await election.stop()
"""

from __future__ import annotations

import asyncio
import logging
from types import TracebackType
from typing import Awaitable, Callable, ParamSpec, TypeVar

from concord.distributed.lock import Lease, LockManager

logger = logging.getLogger(__name__)

LEADER_RESOURCE_PREFIX = "leader:"
DEFAULT_LEASE_TTL_MS = 30000
RENEWAL_INTERVAL = 10.0  # Seconds, well before the 30s TTL


class LeaderElection:
    """Lease-based leader election for distributed singleton workers.

    Args:
        name: Name of the leadership role (e.g., "cleanup-worker")
        locks: Lock manager (a default one on the shared client when None)
        lease_ttl_ms: Lease TTL in milliseconds
        renewal_interval: Seconds between renewal attempts
    """

    def __init__(
        self,
        name: str,
        locks: LockManager | None = None,
        lease_ttl_ms: int = DEFAULT_LEASE_TTL_MS,
        renewal_interval: float = RENEWAL_INTERVAL,
    ):
        if renewal_interval * 1000 >= lease_ttl_ms:
            raise ValueError("renewal_interval must be shorter than the lease TTL")

        self.name = name
        self.locks = locks or LockManager()
        self.lease_ttl_ms = lease_ttl_ms
        self.renewal_interval = renewal_interval

        self._resource = f"{LEADER_RESOURCE_PREFIX}{name}"
        self._lease: Lease | None = None
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._on_elected: list[asyncio.Future[None]] = []

    @property
    def is_leader(self) -> bool:
        """Check if this instance currently holds the leadership lease."""
        return self._lease is not None

    @property
    def resource(self) -> str:
        """Lock resource backing this election."""
        return self._resource

    async def start(self) -> None:
        """Start participating in leader election.

        This starts a background task that continuously tries to acquire
        or renew leadership.
        """
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._election_loop())
        logger.info(f"Started leader election for '{self.name}'")

    async def stop(self) -> None:
        """Stop participating and hand leadership over if held."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self._step_down()
        logger.info(f"Stopped leader election for '{self.name}'")

    async def _election_loop(self) -> None:
        """Main election loop."""
        while self._running:
            try:
                await self.campaign()
                await asyncio.sleep(self.renewal_interval)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in election loop for '{self.name}': {e}")
                # Leadership can no longer be vouched for
                self._lease = None
                await asyncio.sleep(self.renewal_interval)

    async def campaign(self) -> bool:
        """Run one election round: renew if leader, otherwise try to acquire.

        Returns:
            True if this instance is the leader after the round
        """
        if self._lease is not None:
            if await self.locks.extend(self._lease, self.lease_ttl_ms):
                logger.debug(f"Renewed leadership for '{self.name}'")
                return True
            self._lease = None
            logger.warning(f"Lost leadership for '{self.name}'")
            return False

        lease = await self.locks.acquire(self._resource, self.lease_ttl_ms)
        if lease is None:
            return False

        self._lease = lease
        logger.info(f"Elected as leader for '{self.name}'")
        for future in self._on_elected:
            if not future.done():
                future.set_result(None)
        self._on_elected.clear()
        return True

    async def _step_down(self) -> None:
        if self._lease is None:
            return
        lease, self._lease = self._lease, None
        if await self.locks.release(lease):
            logger.info(f"Released leadership for '{self.name}'")

    async def wait_for_leadership(self, timeout: float | None = None) -> bool:
        """Wait until this instance becomes the leader.

        Args:
            timeout: Maximum time to wait in seconds (None = wait forever)

        Returns:
            True if leadership was acquired, False if timeout
        """
        if self.is_leader:
            return True

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._on_elected.append(future)

        try:
            await asyncio.wait_for(future, timeout=timeout)
            return True
        except asyncio.TimeoutError:
            if future in self._on_elected:
                self._on_elected.remove(future)
            return False

    async def current_leader_token(self) -> str | None:
        """Token of the lease currently holding leadership, if any."""
        return await self.locks.owner_token(self._resource)

    async def __aenter__(self) -> "LeaderElection":
        """Context manager entry - try to acquire leadership once."""
        await self.campaign()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Context manager exit - release leadership if held."""
        await self._step_down()


P = ParamSpec("P")
R = TypeVar("R")


def leader_only(
    name: str,
    lease_ttl_ms: int = DEFAULT_LEASE_TTL_MS,
    locks: LockManager | None = None,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R | None]]]:
    """Decorator that makes a function only run on the leader instance.

    Example:
        @leader_only("daily-report")
        async def generate_daily_report():
            # Only runs on the leader instance
            ...
    """

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R | None]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R | None:
            election = LeaderElection(
                name,
                locks=locks,
                lease_ttl_ms=lease_ttl_ms,
                renewal_interval=min(RENEWAL_INTERVAL, lease_ttl_ms / 3000),
            )
            async with election:
                if election.is_leader:
                    return await func(*args, **kwargs)
                logger.debug(f"Skipping {func.__name__} - not leader for '{name}'")
                return None

        wrapper.__name__ = func.__name__
        wrapper.__doc__ = func.__doc__
        return wrapper

    return decorator
