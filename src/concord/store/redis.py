"""Redis client management.

One client (and its connection pool) per process, created lazily from
``settings.redis_url``. Responses are decoded to ``str``.
"""

from __future__ import annotations

from collections.abc import Awaitable
from typing import TYPE_CHECKING, cast

import redis.asyncio as redis

from concord.config import settings

if TYPE_CHECKING:
    from redis.asyncio import Redis

# Module-level connection pool
_redis_client: Redis | None = None


async def get_redis() -> Redis:
    """Get or create the Redis client.

    Uses connection pooling for efficient connection management.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(  # type: ignore[no-untyped-call]
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout,
        )
    return _redis_client


async def close_redis() -> None:
    """Close Redis connections."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


async def ping(client: Redis | None = None) -> bool:
    """Check Redis connectivity."""
    try:
        client = client or await get_redis()
        await cast(Awaitable[bool], client.ping())
        return True
    except Exception:
        return False


def to_str(value: bytes | str | None) -> str | None:
    """Normalise a Redis reply that may be bytes (decode_responses=False)."""
    if value is None:
        return None
    return value.decode() if isinstance(value, bytes) else str(value)
