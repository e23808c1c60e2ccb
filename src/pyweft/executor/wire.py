"""
Wire objects handed to workflow bodies and RPC functions.

A wire is built once per execution context:

- ``WorkflowWire`` is passed to an imperative workflow body and exposes
  the step primitives (``do``, ``sleep``, ``suspend``, ``cancel``).
- ``StepWire`` is passed to an RPC invoked by an imperative step.
- ``GraphWire`` is passed to an RPC invoked by a graph node and lets it
  choose a branch and read or write run-scoped state.

RPC functions receive ``Wire = StepWire | GraphWire`` and can tell the
two apart with ``isinstance``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pyweft.core.duration import Duration
from pyweft.executor import steps
from pyweft.models import StepOptions, WorkflowRun

if TYPE_CHECKING:
    from pyweft.executor.engine import WorkflowEngine
    from pyweft.storage.base import WorkflowStore


@dataclass(frozen=True)
class StepWire:
    """Context for an RPC executed as an imperative workflow step."""

    run_id: str
    workflow_name: str
    step_name: str
    step_id: str
    attempt_count: int = 1


@dataclass
class GraphWireState:
    """Per-node-execution scratch state; discarded once the node completes."""

    branch_key: str | None = None


@dataclass
class GraphWire:
    """Context for an RPC executed as a graph node.

    Example:
        ```python
        async def check_stock(data, wire):
            in_stock = data["quantity"] <= 10
            wire.branch("true" if in_stock else "false")
            await wire.set_state("checked", True)
            return {"in_stock": in_stock}
        ```
    """

    run_id: str
    graph_name: str
    node_id: str
    step_name: str
    store: WorkflowStore = field(repr=False)
    state: GraphWireState = field(default_factory=GraphWireState)

    def branch(self, key: str) -> None:
        """Choose which entry of a keyed ``next`` map runs after this node."""
        self.state.branch_key = str(key)

    @property
    def branch_key(self) -> str | None:
        return self.state.branch_key

    async def get_state(self) -> dict[str, Any]:
        return await self.store.get_run_state(self.run_id)

    async def set_state(self, name: str, value: Any) -> None:
        await self.store.update_run_state(self.run_id, name, value)


Wire = StepWire | GraphWire


@dataclass(frozen=True)
class WorkflowWire:
    """
    Handle passed to an imperative workflow body.

    Every primitive is cached by step name, so the body may be replayed
    from the start any number of times.

    Example:
        ```python
        async def order(data, workflow: WorkflowWire):
            charge = await workflow.do("charge", "chargeCard", {"amount": data["amount"]})
            await workflow.sleep("cool-off", "5s")
            if charge["declined"]:
                await workflow.cancel("card declined")
            return await workflow.do("ship", "shipOrder", {"order": data["id"]})
        ```
    """

    engine: WorkflowEngine = field(repr=False)
    run_id: str
    workflow_name: str
    inline: bool = False

    async def do(
        self,
        step_name: str,
        rpc: str | Any,
        data: Any = None,
        options: StepOptions | None = None,
    ) -> Any:
        """
        Run a step once and cache its result.

        Args:
            step_name: Unique name of the step within the run
            rpc: RPC name, or a zero-argument callable (sync or async)
                executed in the orchestrator itself
            data: Input passed to the RPC
            options: Retry options; unset fields use the engine defaults

        Raises:
            WorkflowStepNameNotString: If ``step_name`` is not a string
            StepFailedError: If the step already failed with no attempts left
        """
        return await steps.do_step(self, step_name, rpc, data, options)

    async def sleep(self, step_name: str, duration: Duration) -> None:
        """Durable delay, e.g. ``await workflow.sleep("wait", "10min")``."""
        await steps.sleep_step(self, step_name, duration)

    async def suspend(self, reason: str, step_name: str = steps.SUSPEND_STEP_NAME) -> None:
        """Pause the run until it is explicitly resumed."""
        await steps.suspend_step(self, reason, step_name)

    async def cancel(self, reason: str | None = None) -> None:
        """Mark the run cancelled and stop the replay."""
        await steps.cancel_step(self, reason)

    async def get_run(self) -> WorkflowRun:
        return await self.engine.get_run(self.run_id)

    async def get_state(self) -> dict[str, Any]:
        return await self.engine.store.get_run_state(self.run_id)

    async def set_state(self, name: str, value: Any) -> None:
        await self.engine.store.update_run_state(self.run_id, name, value)
