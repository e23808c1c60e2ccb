"""
Pytest configuration and fixtures for pyweft tests.

Provides reusable fixtures for storage backends, RPC functions, engines
in both execution modes, and a worker draining the in-memory queue.
"""

import os
import shutil
import tempfile
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from pyweft import (
    InMemoryQueueService,
    LocalRPCService,
    Worker,
    WorkflowEngine,
    WorkflowRegistry,
)
from pyweft.storage import InMemoryWorkflowStore, RedisWorkflowStore, SqliteWorkflowStore


def pytest_sessionfinish(session, exitstatus):
    """Force cleanup after all tests complete to prevent CI hanging."""
    if os.getenv("CI") or os.getenv("GITHUB_ACTIONS"):
        os._exit(exitstatus)


@pytest.fixture
async def in_memory_store() -> AsyncGenerator[InMemoryWorkflowStore, None]:
    """Async in-memory store fixture with automatic cleanup."""
    store = InMemoryWorkflowStore()
    yield store
    await store.reset()


@pytest.fixture
async def sqlite_memory_store() -> AsyncGenerator[SqliteWorkflowStore, None]:
    """Async SQLite in-memory store fixture with automatic cleanup."""
    store = SqliteWorkflowStore(":memory:")
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "test.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
async def sqlite_file_store(temp_db_path: Path) -> AsyncGenerator[SqliteWorkflowStore, None]:
    """Async SQLite file-based store fixture with automatic cleanup."""
    store = SqliteWorkflowStore(str(temp_db_path))
    await store.connect()
    yield store
    await store.close()


@pytest.fixture(params=["memory", "sqlite", pytest.param("redis", marks=pytest.mark.redis)])
async def store(request) -> AsyncGenerator:
    """Every backend, for tests of the shared storage contract.

    The Redis backend uses REDIS_URL (database 15 by default) and is skipped
    when no server answers.
    """
    if request.param == "memory":
        backend = InMemoryWorkflowStore()
        yield backend
        await backend.reset()
    elif request.param == "sqlite":
        backend = await SqliteWorkflowStore.in_memory()
        yield backend
        await backend.close()
    else:
        backend = RedisWorkflowStore(os.getenv("REDIS_URL", "redis://localhost:6379/15"))
        await backend.connect()
        try:
            await backend.reset()
        except (RedisConnectionError, OSError):
            await backend.close()
            pytest.skip("Redis server not available")
        yield backend
        await backend.reset()
        await backend.close()


@pytest.fixture
def calls() -> dict[str, int]:
    """Invocation counts per RPC name, filled by the ``rpc`` fixture."""
    return {}


@pytest.fixture
def rpc(calls: dict[str, int]) -> LocalRPCService:
    """RPC service with a few common functions registered."""
    service = LocalRPCService()

    def counted(name, func):
        async def wrapper(data, wire):
            calls[name] = calls.get(name, 0) + 1
            return await func(data, wire)

        service.register(name, wrapper)

    async def double(data, wire):
        return data * 2

    async def echo(data, wire):
        return data

    async def fail(data, wire):
        raise ValueError("boom")

    counted("double", double)
    counted("echo", echo)
    counted("fail", fail)
    return service


@pytest.fixture
def registry() -> WorkflowRegistry:
    return WorkflowRegistry()


@pytest.fixture
def engine(in_memory_store, registry, rpc) -> WorkflowEngine:
    """Engine without a queue: every run executes in-process."""
    return WorkflowEngine(in_memory_store, registry, rpc)


@pytest.fixture
def queue() -> InMemoryQueueService:
    return InMemoryQueueService()


@pytest.fixture
def queued_engine(in_memory_store, registry, rpc, queue) -> WorkflowEngine:
    """Engine dispatching orchestrator and step-worker jobs to the queue."""
    return WorkflowEngine(in_memory_store, registry, rpc).with_queue(queue).with_scheduler(queue)


@pytest.fixture
def worker(queued_engine, queue) -> Worker:
    return Worker(queued_engine, queue, "test-worker").with_poll_interval(0.01)

