"""
Graph execution runner.

Drives declarative graphs over the same storage contract as imperative
workflows. Both driving modes share one readiness computation:

1. Read the run's graph state (completed, failed, active steps and the
   branch key of each completed step).
2. A terminally failed node (attempts exhausted, no handled ``on_error``)
   fails the run with ``GRAPH_NODE_FAILED``.
3. Candidates are the ``next`` targets of completed nodes (keyed maps only
   follow the recorded branch) plus the entry nodes.
4. Ready nodes are candidates with no step record whose input
   dependencies have all completed.
5. With nothing ready and nothing in flight, the run completes.

Queued mode (``continue_graph``) dispatches each ready node as a step-worker
job and returns; every step completion resumes the orchestrator, which
runs the computation again. Inline mode (``continue_graph_inline``)
executes all ready nodes concurrently in this process and loops until no
progress is possible.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pyweft.core.errors import GraphValidationError, MissingGraphMetadataError, RPCNotFoundError
from pyweft.executor.graph.inputs import referenced_node_ids, resolve_node_input
from pyweft.executor.graph.matching import NodeMatcher, is_templated
from pyweft.executor.graph.validation import validate_graph
from pyweft.executor.outcome import (
    Completed,
    Failed,
    RunOutcome,
    Suspended,
    SuspendReason,
)
from pyweft.executor.wire import GraphWire
from pyweft.models import (
    TRIGGER,
    GraphNode,
    RunStatus,
    SerializedError,
    StepOptions,
    StepState,
    StepStatus,
    WorkflowMeta,
    WorkflowRun,
)

if TYPE_CHECKING:
    from pyweft.executor.engine import WorkflowEngine

logger = logging.getLogger(__name__)

GRAPH_NODE_FAILED = "GRAPH_NODE_FAILED"


class _ErrorRouted:
    """Marker returned by ``execute_graph_step`` when a failure went to ``on_error``."""

    def __repr__(self) -> str:
        return "ERROR_ROUTED"


ERROR_ROUTED = _ErrorRouted()


@dataclass
class _Progress:
    """Result of one readiness computation."""

    completed: dict[str, str] = field(default_factory=dict)  # step name → node id
    terminal_failures: list[str] = field(default_factory=list)
    active: list[str] = field(default_factory=list)
    ready: list[str] = field(default_factory=list)


class GraphRunner:
    """Readiness and routing for one run of one graph definition."""

    def __init__(self, engine: WorkflowEngine, run: WorkflowRun, meta: WorkflowMeta):
        self.engine = engine
        self.store = engine.store
        self.run = run
        self.meta = meta
        self.matcher = NodeMatcher(meta.nodes)

    def __repr__(self) -> str:
        return f"GraphRunner(run_id={self.run.id}, graph={self.meta.name})"

    def node_options(self, node: GraphNode) -> StepOptions:
        return self.engine.step_options(
            StepOptions(retries=node.retries, retry_delay=node.retry_delay)
        )

    # ========================================================================
    # Readiness
    # ========================================================================

    async def progress(self) -> _Progress:
        state = await self.store.get_completed_graph_state(self.run.id)
        validate_graph(
            self.meta,
            [*state.completed_node_ids, *state.failed_node_ids, *state.active_node_ids],
        )
        progress = _Progress(active=list(state.active_node_ids))

        progress.completed = self.matcher.resolve_names(state.completed_node_ids)
        branch_nodes = self.matcher.resolve_names(state.branch_keys, kind="branch key")

        for step_name, node_id in self.matcher.resolve_names(state.failed_node_ids).items():
            targets = self.meta.nodes[node_id].error_targets()
            if targets:
                unstarted = await self.store.get_nodes_without_steps(self.run.id, targets)
                if len(unstarted) < len(targets):
                    continue
            progress.terminal_failures.append(step_name)

        candidates: list[str] = []
        for step_name, node_id in progress.completed.items():
            branch_key = state.branch_keys.get(step_name) if step_name in branch_nodes else None
            candidates.extend(self.meta.nodes[node_id].next_targets(branch_key))
        candidates.extend(self.meta.entry_node_ids)

        unique = [
            c for c in dict.fromkeys(candidates) if not is_templated(c) and c in self.meta.nodes
        ]
        without_steps = await self.store.get_nodes_without_steps(self.run.id, unique)

        completed_nodes = set(progress.completed.values()) | set(progress.completed)
        for node_id in without_steps:
            dependencies = referenced_node_ids(self.meta.nodes[node_id].input)
            if dependencies <= completed_nodes:
                progress.ready.append(node_id)
        return progress

    async def resolve_inputs(self, node_ids: list[str]) -> dict[str, Any]:
        dependencies: set[str] = set()
        for node_id in node_ids:
            dependencies |= referenced_node_ids(self.meta.nodes[node_id].input)
        results = await self.store.get_node_results(self.run.id, sorted(dependencies))
        results[TRIGGER] = self.run.input
        return {
            node_id: resolve_node_input(
                self.meta.nodes[node_id], results, node_id in self.meta.entry_node_ids
            )
            for node_id in node_ids
        }

    # ========================================================================
    # Run transitions
    # ========================================================================

    async def fail(self, step_name: str) -> Failed:
        step = await self.store.get_step_state(self.run.id, step_name)
        cause = step.error.message if step and step.error else "unknown error"
        error = SerializedError(
            message=f"Graph node '{step_name}' failed: {cause}",
            name="GraphNodeFailed",
            code=GRAPH_NODE_FAILED,
        )
        await self.store.update_run_status(self.run.id, RunStatus.FAILED, error=error)
        logger.error(f"Run {self.run.id} of graph {self.meta.name} failed at node {step_name}")
        return Failed(error)

    async def complete(self, progress: _Progress) -> Completed[Any]:
        output = await self.store.get_node_results(self.run.id, list(progress.completed))
        await self.store.update_run_status(self.run.id, RunStatus.COMPLETED, output=output)
        logger.info(f"Run {self.run.id} of graph {self.meta.name} completed")
        return Completed(output)

    def awaiting(self, progress: _Progress) -> Suspended:
        pending = progress.active or progress.ready
        return Suspended(
            SuspendReason(run_id=self.run.id, step_name=pending[0] if pending else None)
        )

    # ========================================================================
    # Queued mode
    # ========================================================================

    async def continue_graph(self) -> RunOutcome:
        """One orchestrator pass: dispatch every ready node to the step queue."""
        while True:
            progress = await self.progress()
            if progress.terminal_failures:
                return await self.fail(progress.terminal_failures[0])
            if not progress.ready:
                if not progress.active:
                    return await self.complete(progress)
                return self.awaiting(progress)

            inputs = await self.resolve_inputs(progress.ready)
            passed_through = False
            for node_id in progress.ready:
                passed_through |= await self.queue_node(node_id, inputs[node_id])
            if not passed_through:
                return self.awaiting(progress)

    async def queue_node(self, node_id: str, data: Any) -> bool:
        """Persist and dispatch a node. Returns True if it resolved immediately."""
        node = self.meta.nodes[node_id]
        step = await self.store.insert_step_state(
            self.run.id, node_id, node.rpc_name, data, self.node_options(node)
        )
        if node.rpc_name is None:
            await self.store.set_step_result(step.step_id, data)
            return True
        await self.store.set_step_scheduled(step.step_id)
        await self.engine.queue_step_worker(
            self.run.id, node_id, node.rpc_name, data, step.retry_policy
        )
        logger.debug(f"Queued node {node_id} ({node.rpc_name}) for run {self.run.id}")
        return False

    async def execute_step(self, node_id: str, step: StepState, data: Any) -> Any:
        """Run one node for a step worker; the step is already RUNNING."""
        node = self.meta.nodes[node_id]
        if node.rpc_name is None:
            return data
        try:
            return await self.invoke(node, node_id, step, data)
        except RPCNotFoundError:
            raise
        except Exception as e:
            targets = node.error_targets()
            if not targets or not step.retries_exhausted:
                raise
            await self.store.set_step_error(step.step_id, e)
            logger.warning(
                f"Node {step.step_name} of run {self.run.id} failed, routing to {targets}: {e}"
            )
            for target in await self.store.get_nodes_without_steps(self.run.id, targets):
                await self.queue_node(target, error_input(e))
            return ERROR_ROUTED

    async def invoke(self, node: GraphNode, node_id: str, step: StepState, data: Any) -> Any:
        if node.rpc_name is None:
            raise GraphValidationError(f"Node '{node_id}' has no RPC to invoke")
        wire = GraphWire(
            run_id=self.run.id,
            graph_name=self.meta.name,
            node_id=node_id,
            step_name=step.step_name,
            store=self.store,
        )
        result = await self.engine.rpc(node.rpc_name, data, wire)
        if wire.branch_key is not None:
            await self.store.set_branch_taken(step.step_id, wire.branch_key)
        return result

    # ========================================================================
    # Inline mode
    # ========================================================================

    async def continue_graph_inline(self) -> RunOutcome:
        """Execute ready nodes in passes until the run can make no progress."""
        from pyweft.executor.engine import outcome_for_run

        while True:
            run = await self.engine.get_run(self.run.id)
            if run.status != RunStatus.RUNNING:
                return outcome_for_run(run)

            progress = await self.progress()
            if progress.terminal_failures:
                return await self.fail(progress.terminal_failures[0])

            retries: list[StepState] = []
            for step_name in progress.active:
                step = await self.store.get_step_state(self.run.id, step_name)
                if step is not None and step.status == StepStatus.PENDING:
                    retries.append(step)

            if not progress.ready and not retries:
                if not progress.active:
                    return await self.complete(progress)
                return self.awaiting(progress)

            inputs = await self.resolve_inputs(progress.ready)
            await asyncio.gather(
                *(self.execute_inline(node_id, inputs[node_id]) for node_id in progress.ready),
                *(self.execute_inline(step.step_name, step.data, step) for step in retries),
            )

    async def execute_inline(
        self, step_name: str, data: Any, step: StepState | None = None
    ) -> None:
        """Execute one node in this process, retrying and routing errors in place."""
        node_id = self.matcher.match(step_name)
        if node_id is None:
            raise GraphValidationError(
                f"Step '{step_name}' of run {self.run.id} matches no node "
                f"of graph '{self.meta.name}'"
            )
        node = self.meta.nodes[node_id]
        if step is None:
            step = await self.store.insert_step_state(
                self.run.id, step_name, node.rpc_name, data, self.node_options(node)
            )
        if node.rpc_name is None:
            await self.store.set_step_result(step.step_id, data)
            return

        while True:
            await self.store.set_step_running(step.step_id)
            try:
                result = await self.invoke(node, node_id, step, data)
            except RPCNotFoundError as e:
                await self.store.set_step_error(step.step_id, e)
                await self.engine.suspend_for_missing_rpc(self.run.id, e.rpc_name, step_name)
                return
            except Exception as e:
                await self.store.set_step_error(step.step_id, e)
                delay = step.retry_policy.delay_for_attempt(step.attempt_count)
                if delay is not None:
                    logger.warning(
                        f"Node {step_name} of run {self.run.id} failed "
                        f"(attempt {step.attempt_count}), retrying in {delay}ms: {e}"
                    )
                    if delay:
                        await asyncio.sleep(delay / 1000)
                    step = await self.store.create_retry_attempt(step.step_id, StepStatus.RUNNING)
                    continue

                targets = await self.store.get_nodes_without_steps(
                    self.run.id, node.error_targets()
                )
                if targets:
                    logger.warning(
                        f"Node {step_name} of run {self.run.id} failed, routing to {targets}: {e}"
                    )
                    await asyncio.gather(
                        *(self.execute_inline(target, error_input(e)) for target in targets)
                    )
                else:
                    logger.error(f"Node {step_name} of run {self.run.id} failed: {e}")
                return

            await self.store.set_step_result(step.step_id, result)
            return


def error_input(error: BaseException) -> dict[str, Any]:
    """Synthetic input handed to ``on_error`` targets."""
    return {"error": {"message": str(error)}}


# ============================================================================
# Entry points
# ============================================================================


async def run_workflow_graph(
    engine: WorkflowEngine,
    workflow: str | WorkflowMeta,
    input: Any = None,
    inline: bool = False,
) -> str:
    """
    Validate a graph, create its run and dispatch the ready entry nodes.

    Args:
        engine: The engine
        workflow: Registered graph name, or a graph carrying its hash
        input: Trigger payload
        inline: Execute in this process even if a queue is configured

    Returns:
        The run id

    Raises:
        MissingGraphMetadataError: If the graph has no nodes or no hash
        GraphValidationError: If the graph has dangling references
    """
    if isinstance(workflow, WorkflowMeta):
        meta = workflow
        if meta.graph_hash is None:
            raise MissingGraphMetadataError(f"Missing graph hash for workflow '{meta.name}'")
        if meta.name not in engine.registry:
            engine.registry.register_graph(meta)
    else:
        meta = engine.registry.get(workflow).meta
        if meta.graph_hash is None:
            raise MissingGraphMetadataError(f"Missing graph hash for workflow '{meta.name}'")

    validate_graph(meta)

    inline = inline or engine.queue_service is None
    run_id = await engine.store.create_run(meta.name, input, inline, meta.graph_hash)
    await engine.store.upsert_workflow_version(
        meta.name, meta.graph_hash, meta.to_dict(), meta.source
    )
    logger.info(
        f"Started run {run_id} of graph {meta.name} ({'inline' if inline else 'queued'})"
    )

    run = await engine.get_run(run_id)
    runner = GraphRunner(engine, run, meta)
    if inline:
        engine._inline_runs.add(run_id)
        try:
            async with engine.store.run_lock(run_id):
                await runner.continue_graph_inline()
        finally:
            engine._inline_runs.discard(run_id)
    else:
        async with engine.store.run_lock(run_id):
            await runner.continue_graph()
    return run_id


async def continue_graph(
    engine: WorkflowEngine, run: WorkflowRun, meta: WorkflowMeta
) -> RunOutcome:
    return await GraphRunner(engine, run, meta).continue_graph()


async def continue_graph_inline(
    engine: WorkflowEngine, run: WorkflowRun, meta: WorkflowMeta
) -> RunOutcome:
    return await GraphRunner(engine, run, meta).continue_graph_inline()


async def run_from_meta(engine: WorkflowEngine, run: WorkflowRun, meta: WorkflowMeta) -> RunOutcome:
    """Continue a run against a specific graph definition, in its own mode."""
    if engine.is_inline(run):
        return await continue_graph_inline(engine, run, meta)
    return await continue_graph(engine, run, meta)


async def execute_graph_step(
    engine: WorkflowEngine,
    run: WorkflowRun,
    meta: WorkflowMeta,
    node_id: str,
    step: StepState,
    data: Any,
) -> Any:
    """
    Execute a graph node on behalf of a step worker.

    Returns:
        The node's result, or ``ERROR_ROUTED`` when the failure was handed
        to the node's ``on_error`` targets (the step error is already
        stored).

    Raises:
        RPCNotFoundError: If the node's RPC is not deployed
        Exception: The node's error, when it has attempts left or no
            ``on_error`` targets
    """
    return await GraphRunner(engine, run, meta).execute_step(node_id, step, data)
