"""
WorkflowStore - Abstract interface for storage backends.

Design Pattern: Adapter Pattern
WorkflowStore defines the target interface that all storage adapters
implement. Different backends (memory, SQLite, Redis) adapt to this common
interface.

Design Principle: Dependency Inversion
The engine and graph runner depend on this abstraction, never on a concrete
backend. A store is injected into a single ``WorkflowEngine``; the engine
holds no run or step state of its own.

Locking:
    ``run_lock`` and ``step_lock`` are async context managers. Each backend
    picks its own primitive (asyncio locks, lease rows, Redis keys with a
    TTL); callers only rely on scoped acquisition with release on every
    exit path, including control-flow signals raised inside the block.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

from pyweft.models import (
    GraphState,
    RunStatus,
    SerializedError,
    StepHistoryEntry,
    StepOptions,
    StepState,
    StepStatus,
    WorkflowRun,
    WorkflowVersion,
)

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Storage operation failed."""

    pass


class LockTimeoutError(StorageError):
    """A run or step lock could not be acquired within ``lock_timeout``."""

    def __init__(self, key: str, timeout: float):
        super().__init__(f"Timed out after {timeout}s waiting for lock {key!r}")
        self.key = key
        self.timeout = timeout


def run_lock_key(run_id: str) -> str:
    return f"run:{run_id}"


def step_lock_key(run_id: str, step_name: str) -> str:
    return f"step:{run_id}:{step_name}"


@asynccontextmanager
async def lease_heartbeat(
    key: str, renew: Callable[[], Awaitable[bool]], interval: float
) -> AsyncIterator[None]:
    """
    Keep a lock lease alive while the body runs.

    Calls ``renew`` every ``interval`` seconds. ``renew`` extends the lease
    only if the holder's token still owns it and returns False otherwise,
    which stops the heartbeat.
    """

    async def beat() -> None:
        while True:
            await asyncio.sleep(interval)
            if not await renew():
                logger.warning(f"Lost lease on lock {key!r}")
                return

    task = asyncio.create_task(beat())
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


class WorkflowStore(ABC):
    """
    Abstract storage interface for durable workflow runs.

    Every method is asynchronous. Records returned to callers are immutable
    snapshots; updates replace them.
    """

    # ========================================================================
    # Run Operations
    # ========================================================================

    @abstractmethod
    async def create_run(
        self,
        workflow_name: str,
        input: Any,
        inline: bool = False,
        graph_hash: str | None = None,
    ) -> str:
        """
        Create a new run in RUNNING status.

        Args:
            workflow_name: Registered workflow name
            input: Trigger payload
            inline: Whether the run executes in-process
            graph_hash: Version identifier of the definition being run

        Returns:
            The new run id
        """
        pass

    @abstractmethod
    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Fetch a run, or None if it does not exist."""
        pass

    @abstractmethod
    async def get_run_history(self, run_id: str) -> list[StepHistoryEntry]:
        """
        Return every step attempt of a run in creation order.

        Each retry of a step appears as its own entry.
        """
        pass

    @abstractmethod
    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        output: Any = None,
        error: SerializedError | None = None,
    ) -> None:
        """
        Update a run's status.

        ``output`` and ``error`` are only written when given. Moving a run
        back to RUNNING clears its error.

        Raises:
            StorageError: If the run does not exist
        """
        pass

    @abstractmethod
    async def update_run_state(self, run_id: str, name: str, value: Any) -> None:
        """Set one key of the run-scoped state."""
        pass

    @abstractmethod
    async def get_run_state(self, run_id: str) -> dict[str, Any]:
        """Return a copy of the run-scoped state."""
        pass

    # ========================================================================
    # Step Operations
    # ========================================================================

    @abstractmethod
    async def insert_step_state(
        self,
        run_id: str,
        step_name: str,
        rpc_name: str | None,
        data: Any,
        options: StepOptions | None = None,
    ) -> StepState:
        """
        Create the first attempt of a step in PENDING status.

        Unset retry options are stored as ``retries=0`` and
        ``retry_delay=0``; the engine resolves its defaults before calling.
        """
        pass

    @abstractmethod
    async def get_step_state(self, run_id: str, step_name: str) -> StepState | None:
        """Return the current attempt of a step, or None if it never ran."""
        pass

    @abstractmethod
    async def set_step_running(self, step_id: str) -> None:
        pass

    @abstractmethod
    async def set_step_scheduled(self, step_id: str) -> None:
        pass

    @abstractmethod
    async def set_step_result(self, step_id: str, result: Any) -> None:
        """Mark an attempt SUCCEEDED and cache its result."""
        pass

    @abstractmethod
    async def set_step_error(self, step_id: str, error: BaseException | SerializedError) -> None:
        """Mark an attempt FAILED and store its serialized error."""
        pass

    @abstractmethod
    async def create_retry_attempt(self, failed_step_id: str, status: StepStatus) -> StepState:
        """
        Append a new attempt for the step owning ``failed_step_id``.

        The new attempt keeps the step's name, RPC, input and retry options,
        gets a fresh step id, and an attempt count one higher than before.
        """
        pass

    # ========================================================================
    # Locks
    # ========================================================================

    @abstractmethod
    def run_lock(self, run_id: str) -> AbstractAsyncContextManager[None]:
        """
        Hold the run lock for the duration of one orchestrator replay.

        Usage:
            ```python
            async with store.run_lock(run_id):
                ...
            ```

        Raises:
            LockTimeoutError: If the store has a lock timeout and it elapses
        """
        pass

    @abstractmethod
    def step_lock(self, run_id: str, step_name: str) -> AbstractAsyncContextManager[None]:
        """Hold the step lock for one step-worker invocation."""
        pass

    # ========================================================================
    # Graph Operations
    # ========================================================================

    @abstractmethod
    async def get_completed_graph_state(self, run_id: str) -> GraphState:
        """
        Summarize the current attempt of every step of a graph run.

        A step is failed when ``attempt_count >= retries + 1``; a failed
        step with attempts left is reported as active.
        """
        pass

    @abstractmethod
    async def get_nodes_without_steps(self, run_id: str, node_ids: list[str]) -> list[str]:
        """Filter ``node_ids`` down to those with no step record, keeping order."""
        pass

    @abstractmethod
    async def get_node_results(self, run_id: str, node_ids: list[str]) -> dict[str, Any]:
        """Results of the given nodes that have succeeded."""
        pass

    @abstractmethod
    async def set_branch_taken(self, step_id: str, branch_key: str) -> None:
        """Record the branch key a node chose."""
        pass

    # ========================================================================
    # Workflow Versions
    # ========================================================================

    @abstractmethod
    async def upsert_workflow_version(
        self,
        workflow_name: str,
        graph_hash: str,
        graph: dict[str, Any],
        source: str = "graph",
    ) -> None:
        pass

    @abstractmethod
    async def get_workflow_version(
        self, workflow_name: str, graph_hash: str
    ) -> WorkflowVersion | None:
        pass

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def reset(self) -> None:
        """Delete all data. Intended for tests."""
        raise NotImplementedError(f"{type(self).__name__} does not support reset()")

    @abstractmethod
    async def close(self) -> None:
        """Release connections held by the store."""
        pass
