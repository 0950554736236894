"""Lease-based mutual exclusion on top of Redis.

A lock is a single key per resource holding a random per-acquisition token
and a millisecond TTL. The token, not the resource name, is what a release
or extension is checked against:

1. ``acquire`` runs ``SET key token NX PX ttl``; it never blocks
2. ``release`` deletes the key only if it still holds our token
3. ``extend`` resets the TTL only if the key still holds our token

Without the token check a holder whose lease expired mid-operation would
delete or extend the lease of whoever acquired the resource next. A holder
that crashes is recovered by TTL expiry alone.

Example:
    locks = LockManager()

    lease = await locks.acquire("orders:42", ttl_ms=10_000)
    if lease is not None:
        try:
            await process_order(42)
        finally:
            await locks.release(lease)

    # Or wait for the lock with jittered backoff
    async with locks.hold("orders:42", ttl_ms=10_000, timeout=5.0):
        await process_order(42)
"""

from __future__ import annotations

import asyncio
import logging
import random
import secrets
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from concord.config import settings
from concord.errors import InvalidArgumentError, LockNotAcquiredError
from concord.observability.metrics import record_lock_operation
from concord.store.executor import ScriptExecutor
from concord.store.keys import StoreKeys
from concord.store.redis import to_str
from concord.store.scripts import LOCK_EXTEND, LOCK_RELEASE

logger = logging.getLogger(__name__)

MAX_RESOURCE_LENGTH = 512


@dataclass(frozen=True)
class Lease:
    """Proof of ownership returned by a successful acquire."""

    resource: str
    token: str
    ttl_ms: int

    def __repr__(self) -> str:
        # Keep tokens out of logs and tracebacks
        return f"Lease(resource={self.resource!r}, token='{self.token[:6]}...', ttl_ms={self.ttl_ms})"


def validate_resource(resource: str) -> None:
    """Reject malformed resource names before any store round trip."""
    if not isinstance(resource, str) or not resource:
        raise InvalidArgumentError("Lock resource must be a non-empty string")
    if len(resource) > MAX_RESOURCE_LENGTH:
        raise InvalidArgumentError(
            f"Lock resource exceeds {MAX_RESOURCE_LENGTH} characters: {resource[:32]}..."
        )
    if any(ch.isspace() or not ch.isprintable() for ch in resource):
        raise InvalidArgumentError(
            f"Lock resource may not contain whitespace or control characters: {resource!r}"
        )


def validate_ttl(ttl_ms: int) -> None:
    """TTL must be a positive whole number of milliseconds."""
    if isinstance(ttl_ms, bool) or not isinstance(ttl_ms, int) or ttl_ms <= 0:
        raise InvalidArgumentError(f"Lock ttl_ms must be a positive integer, got {ttl_ms!r}")


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Exponential backoff with full jitter.

    Spreads retries of many waiters on the same resource over the whole
    interval instead of having them wake up together.
    """
    ceiling = min(maximum, base * (2**attempt))
    return random.uniform(0, ceiling)


class LockManager:
    """Acquires, releases and extends exclusive leases.

    Args:
        executor: Script executor; a default one on the shared client when None
    """

    def __init__(self, executor: ScriptExecutor | None = None):
        self.executor = executor or ScriptExecutor()

    async def acquire(self, resource: str, ttl_ms: int) -> Lease | None:
        """Try once to take the lock.

        Returns:
            A Lease on success, None if another holder has a valid lease
        """
        validate_resource(resource)
        validate_ttl(ttl_ms)

        token = secrets.token_hex(16)
        acquired = await self.executor.call(
            "set",
            StoreKeys.lock(resource),
            token,
            nx=True,
            px=ttl_ms,
        )

        if not acquired:
            record_lock_operation("acquire", "contended")
            logger.debug(f"Lock '{resource}' is held by another owner")
            return None

        record_lock_operation("acquire", "acquired")
        logger.debug(f"Acquired lock '{resource}' for {ttl_ms}ms")
        return Lease(resource=resource, token=token, ttl_ms=ttl_ms)

    async def release(self, lease: Lease) -> bool:
        """Release the lock if this lease still owns it.

        Returns:
            True if deleted, False if the lease had expired (and possibly been
            reacquired by someone else). False is not an error: it tells the
            caller it no longer owned the resource.
        """
        result = await self.executor.execute(
            LOCK_RELEASE,
            keys=[StoreKeys.lock(lease.resource)],
            args=[lease.token],
        )

        released = bool(result)
        record_lock_operation("release", "released" if released else "lost")
        if not released:
            logger.warning(f"Lease on '{lease.resource}' was lost before release")
        return released

    async def extend(self, lease: Lease, ttl_ms: int) -> bool:
        """Reset the lease TTL to ``ttl_ms`` if this lease still owns the lock."""
        validate_ttl(ttl_ms)

        result = await self.executor.execute(
            LOCK_EXTEND,
            keys=[StoreKeys.lock(lease.resource)],
            args=[lease.token, ttl_ms],
        )

        extended = bool(result)
        record_lock_operation("extend", "extended" if extended else "lost")
        if not extended:
            logger.warning(f"Lease on '{lease.resource}' was lost before extension")
        return extended

    async def owner_token(self, resource: str) -> str | None:
        """Token of the current holder, None when the lock is free."""
        validate_resource(resource)
        value = await self.executor.call("get", StoreKeys.lock(resource))
        return to_str(value)

    async def acquire_blocking(
        self,
        resource: str,
        ttl_ms: int,
        timeout: float | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
    ) -> Lease | None:
        """Poll ``acquire`` with jittered exponential backoff.

        Args:
            resource: Resource name
            ttl_ms: Lease TTL in milliseconds
            timeout: Give up after this many seconds (None = settings default)
            base_delay: First backoff ceiling in seconds
            max_delay: Largest backoff ceiling in seconds

        Returns:
            A Lease, or None if the deadline passed first
        """
        timeout = settings.lock_acquire_timeout if timeout is None else timeout
        base_delay = settings.lock_retry_base_delay if base_delay is None else base_delay
        max_delay = settings.lock_retry_max_delay if max_delay is None else max_delay

        deadline = time.monotonic() + timeout
        attempt = 0

        while True:
            lease = await self.acquire(resource, ttl_ms)
            if lease is not None:
                return lease

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.info(f"Gave up waiting for lock '{resource}' after {timeout:.2f}s")
                return None

            await asyncio.sleep(min(remaining, backoff_delay(attempt, base_delay, max_delay)))
            attempt += 1

    @asynccontextmanager
    async def hold(
        self,
        resource: str,
        ttl_ms: int | None = None,
        timeout: float | None = None,
    ) -> AsyncIterator[Lease]:
        """Hold the lock for the duration of the block.

        Waits up to ``timeout`` seconds, then raises LockNotAcquiredError.
        The lease is released on exit, including on exceptions.
        """
        ttl_ms = settings.lock_default_ttl_ms if ttl_ms is None else ttl_ms
        started = time.monotonic()
        lease = await self.acquire_blocking(resource, ttl_ms, timeout=timeout)
        if lease is None:
            raise LockNotAcquiredError(resource, time.monotonic() - started)

        try:
            yield lease
        finally:
            await self.release(lease)
