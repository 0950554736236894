"""Integration test fixtures using Docker.

Provides a containerized Redis for testing the primitives against a real
server.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Iterator

import pytest
import pytest_asyncio
import redis.asyncio as redis

from concord.distributed.lock import LockManager
from concord.queue.reliable import ReliableQueue
from concord.store.executor import ScriptExecutor
from tests.integration.docker_utils import DockerService, get_docker_client, run_container


@pytest.fixture(scope="session")
def docker_client():
    """Create a Docker client or skip if Docker is unavailable."""
    try:
        client = get_docker_client()
        client.ping()
    except Exception as exc:
        pytest.skip(f"Docker not available: {exc}")
    yield client
    client.close()


@pytest.fixture(scope="session")
def redis_container(docker_client) -> Iterator[DockerService]:
    """Start Redis container for the test session."""
    ports = {"6379/tcp": None}
    with run_container(docker_client, "redis:7-alpine", ports=ports) as container:
        yield container


@pytest.fixture(scope="session")
def redis_url(redis_container: DockerService) -> str:
    """Get the Redis URL for the test container."""
    host = redis_container.host
    port = redis_container.port(6379)
    return f"redis://{host}:{port}/0"


@pytest_asyncio.fixture
async def redis_client(redis_url: str) -> AsyncIterator[redis.Redis]:
    """Create a Redis client for tests."""
    client = redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
    await _wait_for_redis(client)
    yield client
    await client.flushdb()  # Clean up after each test
    await client.aclose()


@pytest.fixture
def executor(redis_client: redis.Redis) -> ScriptExecutor:
    """Script executor bound to the test Redis."""
    return ScriptExecutor(redis_client)


@pytest.fixture
def locks(executor: ScriptExecutor) -> LockManager:
    return LockManager(executor)


@pytest.fixture
def queue(executor: ScriptExecutor) -> ReliableQueue:
    return ReliableQueue(executor)


async def _wait_for_redis(client, timeout: float = 30.0) -> None:
    """Wait for Redis to accept connections."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            await client.ping()
            return
        except Exception:
            if time.monotonic() >= deadline:
                raise
            await asyncio.sleep(0.5)
