"""
WorkflowEngine - the step orchestration core.

Design Pattern: Facade + Dependency Injection
The engine owns no run state. It is built around one injected
``WorkflowStore`` and a ``WorkflowRegistry``, plus optional collaborators:

- ``rpc_service``: executes the business function behind a step or node
- ``queue_service``: enqueues orchestrator and step-worker jobs
- ``scheduler_service``: invokes the sleeper RPC once a sleep elapses

Without a queue service every run executes in-process ("inline"); the
observable semantics (step caching, retries, statuses) are the same.

Replay model:
    ``run_workflow_job`` replays the workflow body from the start under the
    run lock. ``do``/``sleep`` calls are cached by step name, so only the
    first unresolved step does new work; the replay then stops and the run
    waits for that step to resolve.

Example:
    ```python
    store = InMemoryWorkflowStore()
    registry = WorkflowRegistry()
    rpc = LocalRPCService()

    @rpc.function("double")
    async def double(data, wire):
        return data * 2

    @registry.workflow("doubler")
    async def doubler(data, workflow):
        return await workflow.do("double", "double", data)

    engine = WorkflowEngine(store, registry, rpc)
    output = await engine.run_to_completion("doubler", 21)  # 42
    ```
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from pyweft.core.errors import (
    RPCNotFoundError,
    WorkflowCancelledError,
    WorkflowError,
    WorkflowFailedError,
    WorkflowRunNotFoundError,
    WorkflowServiceNotInitialized,
)
from pyweft.executor.config import EngineConfig
from pyweft.executor.graph import runner as graph_runner
from pyweft.executor.graph.matching import NodeMatcher
from pyweft.executor.outcome import (
    Cancelled,
    Completed,
    Failed,
    RunOutcome,
    Suspended,
    SuspendReason,
    _AwaitStep,
    _CancelRun,
    _SuspendRun,
)
from pyweft.executor.registry import WorkflowDefinition, WorkflowFunction, WorkflowRegistry
from pyweft.executor.services import JobOptions, QueueService, RPCService, SchedulerService
from pyweft.executor.steps import WORKFLOW_CANCELLED, WORKFLOW_SUSPENDED
from pyweft.executor.wire import StepWire, Wire, WorkflowWire
from pyweft.models import (
    RetryPolicy,
    RunStatus,
    SerializedError,
    StepHistoryEntry,
    StepOptions,
    StepStatus,
    WorkflowMeta,
    WorkflowRun,
)
from pyweft.storage.base import StorageError, WorkflowStore

logger = logging.getLogger(__name__)

RPC_NOT_FOUND = "RPC_NOT_FOUND"
VERSION_CONFLICT = "VERSION_CONFLICT"
VERSION_NOT_FOUND = "VERSION_NOT_FOUND"


class WorkflowEngine:
    """
    Durable workflow engine.

    Builder-style configuration mirrors the worker:

        engine = (
            WorkflowEngine(store, registry, rpc)
            .with_queue(queue)
            .with_scheduler(queue)
        )
    """

    def __init__(
        self,
        store: WorkflowStore,
        registry: WorkflowRegistry,
        rpc_service: RPCService | None = None,
        queue_service: QueueService | None = None,
        scheduler_service: SchedulerService | None = None,
        config: EngineConfig | None = None,
    ):
        self.store = store
        self.registry = registry
        self.rpc_service = rpc_service
        self.queue_service = queue_service
        self.scheduler_service = scheduler_service
        self.config = config or EngineConfig()

        # Runs executing in this process right now; bookkeeping for drain()
        self._inline_runs: set[str] = set()

    def __repr__(self) -> str:
        mode = "queued" if self.queue_service is not None else "inline"
        return f"WorkflowEngine(store={self.store!r}, mode={mode})"

    def with_queue(self, queue_service: QueueService) -> WorkflowEngine:
        self.queue_service = queue_service
        return self

    def with_scheduler(self, scheduler_service: SchedulerService) -> WorkflowEngine:
        self.scheduler_service = scheduler_service
        return self

    def with_rpc(self, rpc_service: RPCService) -> WorkflowEngine:
        self.rpc_service = rpc_service
        return self

    # ========================================================================
    # Helpers shared with step primitives and the graph runner
    # ========================================================================

    @property
    def outstanding_inline_runs(self) -> frozenset[str]:
        return frozenset(self._inline_runs)

    def is_inline(self, run: WorkflowRun) -> bool:
        return run.inline or run.id in self._inline_runs or self.queue_service is None

    def step_options(self, options: StepOptions | None) -> StepOptions:
        """Fill unset retry options with the engine defaults."""
        options = options or StepOptions()
        return StepOptions(
            retries=self.config.retries if options.retries is None else options.retries,
            retry_delay=(
                self.config.retry_delay if options.retry_delay is None else options.retry_delay
            ),
            description=options.description,
        )

    async def rpc(self, name: str, data: Any, wire: Wire | None) -> Any:
        if self.rpc_service is None:
            raise WorkflowServiceNotInitialized("RPC service not configured")
        return await self.rpc_service.rpc_with_wire(name, data, wire)

    def _require_queue(self) -> QueueService:
        if self.queue_service is None:
            raise WorkflowServiceNotInitialized("Queue service not configured")
        return self.queue_service

    async def get_run(self, run_id: str) -> WorkflowRun:
        """
        Raises:
            WorkflowRunNotFoundError: If the run does not exist
        """
        run = await self.store.get_run(run_id)
        if run is None:
            raise WorkflowRunNotFoundError(run_id)
        return run

    async def get_run_history(self, run_id: str) -> list[StepHistoryEntry]:
        await self.get_run(run_id)
        return await self.store.get_run_history(run_id)

    async def suspend_for_missing_rpc(
        self, run_id: str, rpc_name: str, step_name: str | None = None
    ) -> _SuspendRun:
        """Suspend a run whose step targets an RPC that is not deployed.

        Returns the signal so callers inside a replay can raise it.
        """
        error = SerializedError(
            message=f"RPC '{rpc_name}' not found. Deploy the missing function and resume.",
            name=RPCNotFoundError.__name__,
            code=RPC_NOT_FOUND,
        )
        await self.store.update_run_status(run_id, RunStatus.SUSPENDED, error=error)
        logger.warning(f"Run {run_id} suspended: RPC '{rpc_name}' not found")
        return _SuspendRun(run_id, error, step_name)

    async def meta_for_run(self, run: WorkflowRun) -> WorkflowMeta:
        """The definition a run was started on, falling back to the current one."""
        definition = self.registry.get(run.workflow_name)
        if run.graph_hash is None or run.graph_hash == definition.graph_hash:
            return definition.meta
        version = await self.store.get_workflow_version(run.workflow_name, run.graph_hash)
        return version.to_meta() if version is not None else definition.meta

    # ========================================================================
    # Starting runs
    # ========================================================================

    async def start_workflow(self, name: str, input: Any = None, inline: bool = False) -> str:
        """
        Create a run of a registered workflow and start driving it.

        With a queue service the first orchestrator continuation is
        enqueued; otherwise (or with ``inline=True``) the run executes in
        this process and this call returns once the replay stops.

        Raises:
            WorkflowNotFoundError: If ``name`` is unregistered
        """
        definition = self.registry.get(name)
        if definition.is_graph:
            return await self.run_workflow_graph(name, input, inline=inline)

        inline = inline or self.queue_service is None
        run_id = await self.store.create_run(name, input, inline, definition.graph_hash)
        await self._store_version(definition)
        logger.info(f"Started run {run_id} of workflow {name} ({'inline' if inline else 'queued'})")

        if inline:
            await self._run_inline(run_id)
        else:
            await self.resume_workflow(run_id)
        return run_id

    async def run_workflow_graph(
        self, workflow: str | WorkflowMeta, input: Any = None, inline: bool = False
    ) -> str:
        """Create a run of a declarative graph; see ``graph.runner``."""
        return await graph_runner.run_workflow_graph(self, workflow, input, inline)

    async def run_to_completion(
        self, name: str, input: Any = None, timeout: float | None = None
    ) -> Any:
        """
        Run a workflow in-process and wait for an end state.

        Returns:
            The run output, or None if the run ended suspended

        Raises:
            WorkflowFailedError: If the run failed
            WorkflowCancelledError: If the run was cancelled
            TimeoutError: If ``timeout`` seconds elapse first
        """
        run_id = await self.start_workflow(name, input, inline=True)
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            run = await self.get_run(run_id)
            if run.status.is_end_state:
                break
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError(f"Run {run_id} did not finish within {timeout}s")
            await asyncio.sleep(self.config.inline_poll_interval)

        if run.status == RunStatus.FAILED:
            raise WorkflowFailedError(run_id, run.error)
        if run.status == RunStatus.CANCELLED:
            raise WorkflowCancelledError(run_id, run.error.message if run.error else None)
        if run.status == RunStatus.SUSPENDED:
            return None
        return run.output

    async def _run_inline(self, run_id: str) -> RunOutcome:
        self._inline_runs.add(run_id)
        try:
            return await self.run_workflow_job(run_id)
        finally:
            self._inline_runs.discard(run_id)

    async def _store_version(self, definition: WorkflowDefinition) -> None:
        meta = definition.meta
        await self.store.upsert_workflow_version(
            definition.name, definition.graph_hash, meta.to_dict(), meta.source
        )

    async def register_workflow_versions(self) -> None:
        """Store every registered definition under its hash."""
        for definition in self.registry.definitions():
            await self._store_version(definition)
        logger.info(f"Registered {len(self.registry)} workflow version(s)")

    # ========================================================================
    # Orchestrator
    # ========================================================================

    async def run_workflow_job(self, run_id: str) -> RunOutcome:
        """
        Replay a run once under the run lock.

        Runs that are not RUNNING are left alone; their current status is
        reported as the outcome.

        Returns:
            Completed, Suspended (awaiting a step, or the run was suspended),
            Cancelled, or Failed. Failures are persisted before returning.

        Raises:
            WorkflowRunNotFoundError: If the run does not exist
            WorkflowNotFoundError: If the run's workflow is not registered
        """
        async with self.store.run_lock(run_id):
            run = await self.get_run(run_id)
            if run.status != RunStatus.RUNNING:
                logger.debug(f"Run {run_id} is {run.status}, nothing to replay")
                return outcome_for_run(run)

            definition = self.registry.get(run.workflow_name)
            if run.graph_hash is not None and run.graph_hash != definition.graph_hash:
                return await self._run_pinned_version(run, definition, run.graph_hash)

            if definition.func is None:
                return await graph_runner.run_from_meta(self, run, definition.meta)

            return await self._replay(run, definition.func)

    async def _replay(self, run: WorkflowRun, func: WorkflowFunction) -> RunOutcome:
        wire = WorkflowWire(
            engine=self, run_id=run.id, workflow_name=run.workflow_name, inline=self.is_inline(run)
        )
        logger.debug(f"Replaying run {run.id} of workflow {run.workflow_name}")
        try:
            output = await func(run.input, wire)
        except _AwaitStep as signal:
            return Suspended(SuspendReason(run_id=run.id, step_name=signal.step_name))
        except _SuspendRun as signal:
            return Suspended(
                SuspendReason(
                    run_id=run.id,
                    step_name=signal.step_name,
                    code=signal.error.code,
                    message=signal.error.message,
                )
            )
        except _CancelRun as signal:
            return Cancelled(signal.reason)
        except Exception as e:
            error = SerializedError.from_exception(e)
            await self.store.update_run_status(run.id, RunStatus.FAILED, error=error)
            logger.error(f"Run {run.id} of workflow {run.workflow_name} failed: {e}")
            return Failed(error, e)

        await self.store.update_run_status(run.id, RunStatus.COMPLETED, output=output)
        logger.info(f"Run {run.id} of workflow {run.workflow_name} completed")
        return Completed(output)

    async def _run_pinned_version(
        self, run: WorkflowRun, definition: WorkflowDefinition, graph_hash: str
    ) -> RunOutcome:
        """Continue a run whose definition changed since it started."""
        version = await self.store.get_workflow_version(run.workflow_name, graph_hash)
        if version is None:
            return await self._fail(
                run.id,
                SerializedError(
                    message=(
                        f"Version {graph_hash} of workflow '{run.workflow_name}' not found"
                    ),
                    name="WorkflowVersionNotFound",
                    code=VERSION_NOT_FOUND,
                ),
            )

        meta = version.to_meta()
        if not meta.is_graph:
            return await self._fail(
                run.id,
                SerializedError(
                    message=(
                        f"Workflow '{run.workflow_name}' changed since run {run.id} started "
                        f"(version {graph_hash}, now {definition.graph_hash})"
                    ),
                    name="WorkflowVersionConflict",
                    code=VERSION_CONFLICT,
                ),
            )

        logger.info(
            f"Run {run.id} continues on stored version {graph_hash} "
            f"of workflow {run.workflow_name}"
        )
        return await graph_runner.run_from_meta(self, run, meta)

    async def _fail(self, run_id: str, error: SerializedError) -> Failed:
        await self.store.update_run_status(run_id, RunStatus.FAILED, error=error)
        logger.error(f"Run {run_id} failed: {error.message}")
        return Failed(error)

    async def orchestrate_workflow(self, run_id: str) -> RunOutcome:
        """
        Queue-consumer entry point for orchestrator jobs.

        Suspension and cancellation are expected outcomes. A failure raised
        by the workflow body is re-raised after the run is marked failed;
        errors outside the replay mark the run failed too.
        """
        try:
            outcome = await self.run_workflow_job(run_id)
        except (StorageError, WorkflowRunNotFoundError):
            raise
        except Exception as e:
            await self.store.update_run_status(
                run_id, RunStatus.FAILED, error=SerializedError.from_exception(e)
            )
            logger.error(f"Orchestrating run {run_id} failed: {e}")
            raise

        if isinstance(outcome, Failed) and outcome.exception is not None:
            raise outcome.exception
        return outcome

    async def resume_workflow(self, run_id: str) -> None:
        """Re-drive a run: enqueue an orchestrator job, or replay in-process."""
        if self.queue_service is None:
            await self.run_workflow_job(run_id)
            return
        await self.queue_service.add(self.config.orchestrator_queue_name, {"run_id": run_id})

    async def schedule_orchestrator_retry(self, run_id: str, delay_ms: int) -> None:
        queue = self._require_queue()
        await queue.add(
            self.config.orchestrator_queue_name, {"run_id": run_id}, JobOptions(delay=delay_ms)
        )

    # ========================================================================
    # Step worker
    # ========================================================================

    async def queue_step_worker(
        self,
        run_id: str,
        step_name: str,
        rpc_name: str,
        data: Any,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """Enqueue a step-worker job with attempts and backoff from the policy."""
        queue = self._require_queue()
        policy = retry_policy or self.config.retry_policy
        await queue.add(
            self.config.step_worker_queue_name,
            {"run_id": run_id, "step_name": step_name, "rpc_name": rpc_name, "data": data},
            JobOptions(attempts=policy.max_attempts, backoff=policy.backoff()),
        )

    async def execute_workflow_step(
        self, run_id: str, step_name: str, rpc_name: str, data: Any
    ) -> Any:
        """
        Queue-consumer entry point for step-worker jobs.

        Idempotent under at-least-once delivery: a succeeded step only
        resumes the orchestrator, a running step is left alone, and a
        failed step gets a new attempt. Business errors are re-raised so
        the queue can redeliver; once attempts are exhausted the
        orchestrator is resumed first so it can fail the run.
        """
        async with self.store.step_lock(run_id, step_name):
            step = await self.store.get_step_state(run_id, step_name)
            if step is None:
                step = await self.store.insert_step_state(
                    run_id, step_name, rpc_name, data, self.step_options(None)
                )

            if step.status == StepStatus.SUCCEEDED:
                logger.debug(f"Step {step_name} of run {run_id} already succeeded")
                await self.resume_workflow(run_id)
                return step.result
            if step.status == StepStatus.RUNNING:
                logger.debug(f"Step {step_name} of run {run_id} is already running")
                return None
            if step.status == StepStatus.FAILED:
                step = await self.store.create_retry_attempt(step.step_id, StepStatus.RUNNING)
            else:
                await self.store.set_step_running(step.step_id)

            run = await self.get_run(run_id)
            meta = await self.meta_for_run(run)
            node_id = NodeMatcher(meta.nodes).match(step_name) if meta.is_graph else None

            try:
                if node_id is not None:
                    result = await graph_runner.execute_graph_step(
                        self, run, meta, node_id, step, data
                    )
                else:
                    result = await self.rpc(
                        rpc_name,
                        data,
                        StepWire(
                            run_id=run_id,
                            workflow_name=run.workflow_name,
                            step_name=step_name,
                            step_id=step.step_id,
                            attempt_count=step.attempt_count,
                        ),
                    )
            except RPCNotFoundError as e:
                await self.store.set_step_error(step.step_id, e)
                await self.suspend_for_missing_rpc(run_id, e.rpc_name, step_name)
                return None
            except Exception as e:
                await self.store.set_step_error(step.step_id, e)
                if step.retries_exhausted:
                    logger.error(
                        f"Step {step_name} of run {run_id} failed after "
                        f"{step.attempt_count} attempt(s): {e}"
                    )
                    await self.resume_workflow(run_id)
                else:
                    logger.warning(
                        f"Step {step_name} of run {run_id} failed "
                        f"(attempt {step.attempt_count}/{step.retry_policy.max_attempts}): {e}"
                    )
                raise

            if result is graph_runner.ERROR_ROUTED:
                await self.resume_workflow(run_id)
                return None

            await self.store.set_step_result(step.step_id, result)
            await self.resume_workflow(run_id)
            return result

    async def execute_workflow_sleep_completed(self, run_id: str, step_id: str) -> None:
        """Sleeper callback: resolve the sleep step and resume the run."""
        await self.store.set_step_result(step_id, None)
        logger.debug(f"Sleep {step_id} of run {run_id} elapsed")
        await self.resume_workflow(run_id)

    # ========================================================================
    # External control
    # ========================================================================

    async def resume_run(self, run_id: str) -> None:
        """
        Resume a suspended run.

        Steps that failed because their RPC was missing get a fresh
        attempt, then the run is re-driven.

        Raises:
            WorkflowError: If the run already reached a terminal status
        """
        run = await self.get_run(run_id)
        if run.status.is_terminal:
            raise WorkflowError(f"Run {run_id} is {run.status} and cannot be resumed")

        latest: dict[str, StepHistoryEntry] = {}
        for entry in await self.store.get_run_history(run_id):
            latest[entry.step_name] = entry
        retried = []
        for entry in latest.values():
            missing_rpc = entry.error is not None and entry.error.code == RPC_NOT_FOUND
            if entry.status == StepStatus.FAILED and missing_rpc:
                retried.append(
                    await self.store.create_retry_attempt(entry.step_id, StepStatus.PENDING)
                )

        await self.store.update_run_status(run_id, RunStatus.RUNNING)
        logger.info(f"Resumed run {run_id} ({len(retried)} step(s) retried)")

        run = await self.get_run(run_id)
        if self.is_inline(run):
            await self._run_inline(run_id)
            return

        meta = await self.meta_for_run(run)
        if meta.is_graph:
            for step in retried:
                if step.rpc_name is not None:
                    await self.queue_step_worker(
                        run_id, step.step_name, step.rpc_name, step.data, step.retry_policy
                    )
        await self.resume_workflow(run_id)

    async def cancel_run(self, run_id: str, reason: str | None = None) -> None:
        run = await self.get_run(run_id)
        if run.status.is_terminal:
            logger.warning(f"Run {run_id} is already {run.status}, not cancelling")
            return
        await self.store.update_run_status(
            run_id,
            RunStatus.CANCELLED,
            error=SerializedError(
                message=reason or "Workflow cancelled",
                name="WorkflowCancelled",
                code=WORKFLOW_CANCELLED,
            ),
        )
        logger.info(f"Run {run_id} cancelled")

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def drain(self, timeout: float | None = None) -> None:
        """Wait until no inline run is executing in this process."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._inline_runs:
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError(f"{len(self._inline_runs)} inline run(s) still executing")
            await asyncio.sleep(self.config.inline_poll_interval)

    async def close(self) -> None:
        await self.drain()
        await self.store.close()


def outcome_for_run(run: WorkflowRun) -> RunOutcome:
    """Describe a run that is not RUNNING as an outcome."""
    error = run.error
    if run.status == RunStatus.COMPLETED:
        return Completed(run.output)
    if run.status == RunStatus.FAILED:
        return Failed(error or SerializedError(message=f"Run {run.id} failed"))
    if run.status == RunStatus.CANCELLED:
        return Cancelled(error.message if error else None)
    return Suspended(
        SuspendReason(
            run_id=run.id,
            code=error.code if error and error.code else WORKFLOW_SUSPENDED,
            message=error.message if error else None,
        )
    )
