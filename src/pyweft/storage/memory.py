"""In-memory storage implementation for pyweft.

Design Pattern: Adapter Pattern
InMemoryWorkflowStore adapts plain dictionaries to the WorkflowStore
interface. Can be substituted for SqliteWorkflowStore or RedisWorkflowStore
without changing client code.

Instance is immediately usable after __init__.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any

from uuid_extensions import uuid7

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
from pyweft.storage.base import (
    LockTimeoutError,
    StorageError,
    WorkflowStore,
    run_lock_key,
    step_lock_key,
)


class InMemoryWorkflowStore(WorkflowStore):
    """In-memory storage for tests and single-process deployments.

    Run and step locks are per-key ``asyncio.Lock`` objects, so they only
    exclude coroutines of the same event loop.

    Usage:
        store = InMemoryWorkflowStore()
        run_id = await store.create_run("order", {"id": 1})
    """

    def __init__(self, lock_timeout: float | None = None):
        """
        Args:
            lock_timeout: Seconds to wait for a run/step lock; None waits
                indefinitely
        """
        self.lock_timeout = lock_timeout

        # {run_id: WorkflowRun}
        self._runs: dict[str, WorkflowRun] = {}

        # {step_id: StepState} for every attempt ever made
        self._attempts: dict[str, StepState] = {}

        # {(run_id, step_name): step_id} of the current attempt
        self._current: dict[tuple[str, str], str] = {}

        # {run_id: [step_id, ...]} in creation order
        self._history: dict[str, list[str]] = {}

        # {step_id: branch_key}
        self._branches: dict[str, str] = {}

        # {(workflow_name, graph_hash): WorkflowVersion}
        self._versions: dict[tuple[str, str], WorkflowVersion] = {}

        self._locks: dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"InMemoryWorkflowStore(runs={len(self._runs)}, attempts={len(self._attempts)})"

    # ========================================================================
    # Runs
    # ========================================================================

    async def create_run(
        self,
        workflow_name: str,
        input: Any,
        inline: bool = False,
        graph_hash: str | None = None,
    ) -> str:
        async with self._lock:
            run_id = str(uuid7())
            self._runs[run_id] = WorkflowRun(
                id=run_id,
                workflow_name=workflow_name,
                status=RunStatus.RUNNING,
                input=copy.deepcopy(input),
                inline=inline,
                graph_hash=graph_hash,
            )
            self._history[run_id] = []
            return run_id

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        async with self._lock:
            run = self._runs.get(run_id)
            return _detached_run(run) if run is not None else None

    async def get_run_history(self, run_id: str) -> list[StepHistoryEntry]:
        async with self._lock:
            return [
                StepHistoryEntry.from_state(_detached_step(self._attempts[step_id]))
                for step_id in self._history.get(run_id, [])
            ]

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        output: Any = None,
        error: SerializedError | None = None,
    ) -> None:
        async with self._lock:
            run = self._require_run(run_id)
            changes: dict[str, Any] = {"status": status, "updated_at": datetime.now()}
            if output is not None:
                changes["output"] = copy.deepcopy(output)
            if error is not None:
                changes["error"] = error
            elif status == RunStatus.RUNNING:
                changes["error"] = None
            self._runs[run_id] = replace(run, **changes)

    async def update_run_state(self, run_id: str, name: str, value: Any) -> None:
        async with self._lock:
            run = self._require_run(run_id)
            state = dict(run.state)
            state[name] = copy.deepcopy(value)
            self._runs[run_id] = replace(run, state=state, updated_at=datetime.now())

    async def get_run_state(self, run_id: str) -> dict[str, Any]:
        async with self._lock:
            return copy.deepcopy(self._require_run(run_id).state)

    # ========================================================================
    # Steps
    # ========================================================================

    async def insert_step_state(
        self,
        run_id: str,
        step_name: str,
        rpc_name: str | None,
        data: Any,
        options: StepOptions | None = None,
    ) -> StepState:
        async with self._lock:
            self._require_run(run_id)
            options = options or StepOptions()
            state = StepState(
                step_id=str(uuid7()),
                run_id=run_id,
                step_name=step_name,
                status=StepStatus.PENDING,
                rpc_name=rpc_name,
                data=copy.deepcopy(data),
                attempt_count=1,
                retries=options.retries or 0,
                retry_delay=options.retry_delay or 0,
            )
            self._append_attempt(state)
            return _detached_step(state)

    async def get_step_state(self, run_id: str, step_name: str) -> StepState | None:
        async with self._lock:
            step_id = self._current.get((run_id, step_name))
            return _detached_step(self._attempts[step_id]) if step_id else None

    async def set_step_running(self, step_id: str) -> None:
        now = datetime.now()
        await self._update_step(step_id, status=StepStatus.RUNNING, running_at=now)

    async def set_step_scheduled(self, step_id: str) -> None:
        now = datetime.now()
        await self._update_step(step_id, status=StepStatus.SCHEDULED, scheduled_at=now)

    async def set_step_result(self, step_id: str, result: Any) -> None:
        await self._update_step(
            step_id,
            status=StepStatus.SUCCEEDED,
            result=copy.deepcopy(result),
            error=None,
            succeeded_at=datetime.now(),
        )

    async def set_step_error(self, step_id: str, error: BaseException | SerializedError) -> None:
        if isinstance(error, BaseException):
            error = SerializedError.from_exception(error)
        await self._update_step(
            step_id, status=StepStatus.FAILED, error=error, failed_at=datetime.now()
        )

    async def create_retry_attempt(self, failed_step_id: str, status: StepStatus) -> StepState:
        async with self._lock:
            previous = self._require_step(failed_step_id)
            current_id = self._current[(previous.run_id, previous.step_name)]
            current = self._attempts[current_id]
            now = datetime.now()
            state = StepState(
                step_id=str(uuid7()),
                run_id=previous.run_id,
                step_name=previous.step_name,
                status=status,
                rpc_name=previous.rpc_name,
                data=previous.data,
                attempt_count=current.attempt_count + 1,
                retries=previous.retries,
                retry_delay=previous.retry_delay,
                running_at=now if status == StepStatus.RUNNING else None,
                scheduled_at=now if status == StepStatus.SCHEDULED else None,
            )
            self._append_attempt(state)
            return _detached_step(state)

    # ========================================================================
    # Locks
    # ========================================================================

    def run_lock(self, run_id: str):
        return self._hold(run_lock_key(run_id))

    def step_lock(self, run_id: str, step_name: str):
        return self._hold(step_lock_key(run_id, step_name))

    @asynccontextmanager
    async def _hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        if self.lock_timeout is None:
            await lock.acquire()
        else:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.lock_timeout)
            except asyncio.TimeoutError as e:
                raise LockTimeoutError(key, self.lock_timeout) from e
        try:
            yield
        finally:
            lock.release()

    # ========================================================================
    # Graph
    # ========================================================================

    async def get_completed_graph_state(self, run_id: str) -> GraphState:
        async with self._lock:
            state = GraphState()
            for (owner, step_name), step_id in self._current.items():
                if owner != run_id:
                    continue
                step = self._attempts[step_id]
                if step.status == StepStatus.SUCCEEDED:
                    state.completed_node_ids.append(step_name)
                    if step_id in self._branches:
                        state.branch_keys[step_name] = self._branches[step_id]
                elif step.status == StepStatus.FAILED and step.retries_exhausted:
                    state.failed_node_ids.append(step_name)
                else:
                    state.active_node_ids.append(step_name)
            return state

    async def get_nodes_without_steps(self, run_id: str, node_ids: list[str]) -> list[str]:
        async with self._lock:
            return [node_id for node_id in node_ids if (run_id, node_id) not in self._current]

    async def get_node_results(self, run_id: str, node_ids: list[str]) -> dict[str, Any]:
        async with self._lock:
            results: dict[str, Any] = {}
            for node_id in node_ids:
                step_id = self._current.get((run_id, node_id))
                if step_id is None:
                    continue
                step = self._attempts[step_id]
                if step.status == StepStatus.SUCCEEDED:
                    results[node_id] = copy.deepcopy(step.result)
            return results

    async def set_branch_taken(self, step_id: str, branch_key: str) -> None:
        async with self._lock:
            self._require_step(step_id)
            self._branches[step_id] = branch_key

    # ========================================================================
    # Versions
    # ========================================================================

    async def upsert_workflow_version(
        self,
        workflow_name: str,
        graph_hash: str,
        graph: dict[str, Any],
        source: str = "graph",
    ) -> None:
        async with self._lock:
            self._versions[(workflow_name, graph_hash)] = WorkflowVersion(
                workflow_name=workflow_name,
                graph_hash=graph_hash,
                graph=copy.deepcopy(graph),
                source=source,  # type: ignore[arg-type]
            )

    async def get_workflow_version(
        self, workflow_name: str, graph_hash: str
    ) -> WorkflowVersion | None:
        async with self._lock:
            version = self._versions.get((workflow_name, graph_hash))
            return replace(version, graph=copy.deepcopy(version.graph)) if version else None

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def reset(self) -> None:
        async with self._lock:
            self._runs.clear()
            self._attempts.clear()
            self._current.clear()
            self._history.clear()
            self._branches.clear()
            self._versions.clear()

    async def close(self) -> None:
        self._locks.clear()

    # ========================================================================
    # Helpers (caller holds self._lock unless noted)
    # ========================================================================

    def _require_run(self, run_id: str) -> WorkflowRun:
        run = self._runs.get(run_id)
        if run is None:
            raise StorageError(f"Run not found: {run_id}")
        return run

    def _require_step(self, step_id: str) -> StepState:
        step = self._attempts.get(step_id)
        if step is None:
            raise StorageError(f"Step not found: {step_id}")
        return step

    def _append_attempt(self, state: StepState) -> None:
        self._attempts[state.step_id] = state
        self._current[(state.run_id, state.step_name)] = state.step_id
        self._history.setdefault(state.run_id, []).append(state.step_id)

    async def _update_step(self, step_id: str, **changes: Any) -> None:
        """Replace an attempt with an updated copy. Acquires self._lock."""
        async with self._lock:
            step = self._require_step(step_id)
            self._attempts[step_id] = replace(step, updated_at=datetime.now(), **changes)


# Values handed to callers are deep copies of the stored ones.


def _detached_run(run: WorkflowRun) -> WorkflowRun:
    return replace(
        run,
        input=copy.deepcopy(run.input),
        output=copy.deepcopy(run.output),
        state=copy.deepcopy(run.state),
    )


def _detached_step(step: StepState) -> StepState:
    return replace(step, data=copy.deepcopy(step.data), result=copy.deepcopy(step.result))
