"""Atomic script executor.

The single path by which the lock manager, the rate limiters and the
reliable queue talk to Redis. Two entry points:

- ``execute(script, keys, args)`` runs a Lua script. Redis executes it to
  completion without interleaving commands from other clients.
- ``call(command, *args, **kwargs)`` runs one Redis command, which is atomic
  on its own (``SET NX PX``, ``XADD``, ``XREADGROUP``, ``XCLAIM`` ...).

The executor never retries. Redis exceptions are translated into the
``concord.errors`` taxonomy with the original exception chained, so callers
can tell transient failures (timeouts, lost connections) from rejected
scripts and apply their own retry policy.

Example:
    executor = ScriptExecutor()
    deleted = await executor.execute(LOCK_RELEASE, keys=[key], args=[token])
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from redis.exceptions import (
    ConnectionError as RedisConnectionError,
)
from redis.exceptions import (
    NoScriptError,
    RedisError,
    ResponseError,
)
from redis.exceptions import (
    TimeoutError as RedisTimeoutError,
)

from concord.errors import (
    InvalidArgumentError,
    ScriptError,
    StoreError,
    StoreTimeoutError,
    StoreUnavailableError,
)
from concord.observability.metrics import record_store_error, record_store_operation
from concord.observability.tracing import get_tracer
from concord.store.redis import get_redis
from concord.store.scripts import ALL_SCRIPTS, LuaScript

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

ScriptArg = str | int | float | bytes


def translate_error(exc: RedisError, operation: str) -> StoreError:
    """Map a redis-py exception onto the store error taxonomy."""
    if isinstance(exc, RedisTimeoutError):
        record_store_error("timeout")
        return StoreTimeoutError(f"{operation} timed out: {exc}", operation=operation)
    if isinstance(exc, RedisConnectionError):
        record_store_error("unavailable")
        return StoreUnavailableError(f"{operation} failed, store unavailable: {exc}", operation)
    if isinstance(exc, ResponseError):
        record_store_error("script")
        return ScriptError(f"{operation} rejected by store: {exc}", operation=operation)
    record_store_error("other")
    return StoreError(f"{operation} failed: {exc}", operation=operation)


class ScriptExecutor:
    """Thin adapter submitting scripts and single commands to Redis.

    Args:
        redis: Client to use; the shared client from ``get_redis()`` when None
    """

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    async def _get_redis(self) -> Redis:
        """Get Redis client, initializing if needed."""
        if self._redis is None:
            self._redis = await get_redis()
        return self._redis

    async def execute(
        self,
        script: LuaScript,
        keys: Sequence[str] = (),
        args: Sequence[ScriptArg] = (),
    ) -> Any:
        """Run a Lua script atomically and return its reply.

        Uses EVALSHA and falls back to EVAL once when the script is not yet
        cached on the server (EVAL caches it for subsequent calls).
        """
        redis = await self._get_redis()
        operation = f"script:{script.name}"

        with tracer.start_as_current_span(operation) as span:
            span.set_attribute("db.system", "redis")
            span.set_attribute("concord.script", script.name)
            start = time.perf_counter()
            try:
                try:
                    return await redis.evalsha(script.sha, len(keys), *keys, *args)
                except NoScriptError:
                    logger.debug(f"Script {script.name} not cached, sending source")
                    return await redis.eval(script.source, len(keys), *keys, *args)
            except RedisError as exc:
                span.record_exception(exc)
                raise translate_error(exc, operation) from exc
            finally:
                record_store_operation(operation, time.perf_counter() - start)

    async def call(self, command: str, *args: Any, **kwargs: Any) -> Any:
        """Run a single Redis command by its redis-py method name.

        Example:
            await executor.call("set", key, token, nx=True, px=ttl_ms)
        """
        redis = await self._get_redis()
        method = getattr(redis, command, None)
        if method is None or command.startswith("_"):
            raise InvalidArgumentError(f"Unknown store command: {command}")

        with tracer.start_as_current_span(f"command:{command}") as span:
            span.set_attribute("db.system", "redis")
            span.set_attribute("db.operation", command)
            start = time.perf_counter()
            try:
                return await method(*args, **kwargs)
            except RedisError as exc:
                span.record_exception(exc)
                raise translate_error(exc, command) from exc
            finally:
                record_store_operation(command, time.perf_counter() - start)

    async def load_scripts(self, scripts: Sequence[LuaScript] = ALL_SCRIPTS) -> None:
        """Preload scripts into the server script cache."""
        redis = await self._get_redis()
        for script in scripts:
            try:
                sha = await redis.script_load(script.source)
            except RedisError as exc:
                raise translate_error(exc, f"script_load:{script.name}") from exc
            if sha != script.sha:
                raise ScriptError(
                    f"Server returned SHA {sha} for {script.name}, expected {script.sha}",
                    operation=f"script_load:{script.name}",
                )
        logger.info(f"Loaded {len(scripts)} scripts")
