"""
Weft: durable workflow execution for Python.

Runs multi-step business processes to completion across process restarts,
queue redeliveries and partial failures. Workflows are either imperative
async functions built from cached steps, or declarative graphs of RPC
nodes with data references and branches.

Example:
    ```python
    import asyncio
    from pyweft import InMemoryWorkflowStore, LocalRPCService, WorkflowEngine, WorkflowRegistry

    rpc = LocalRPCService()
    registry = WorkflowRegistry()

    @rpc.function("chargeCard")
    async def charge_card(data, wire):
        return {"charged": data["amount"]}

    @registry.workflow("checkout")
    async def checkout(data, workflow):
        charge = await workflow.do("charge", "chargeCard", {"amount": data["amount"]})
        await workflow.sleep("settle", "1s")
        return charge

    async def main():
        engine = WorkflowEngine(InMemoryWorkflowStore(), registry, rpc)
        print(await engine.run_to_completion("checkout", {"amount": 10}))

    asyncio.run(main())
    ```
"""

from pyweft.core import (
    AmbiguousTemplateMatchError,
    GraphValidationError,
    MissingGraphMetadataError,
    RPCNotFoundError,
    StepFailedError,
    WorkflowCancelledError,
    WorkflowError,
    WorkflowFailedError,
    WorkflowNotFoundError,
    WorkflowRunNotFoundError,
    WorkflowServiceNotInitialized,
    WorkflowStepNameNotString,
)
from pyweft.executor import (
    Cancelled,
    Completed,
    EngineConfig,
    Failed,
    GraphWire,
    InMemoryQueueService,
    JobOptions,
    LocalRPCService,
    RunOutcome,
    StepWire,
    Suspended,
    SuspendReason,
    Worker,
    WorkflowEngine,
    WorkflowRegistry,
    WorkflowWire,
)
from pyweft.models import (
    GraphNode,
    RetryPolicy,
    RunStatus,
    SerializedError,
    StepHistoryEntry,
    StepOptions,
    StepState,
    StepStatus,
    WorkflowMeta,
    WorkflowRun,
    ref,
    template,
)
from pyweft.storage import StorageError, WorkflowStore
from pyweft.storage.memory import InMemoryWorkflowStore

__version__ = "0.1.0"

__all__ = [
    # Engine
    "WorkflowEngine",
    "WorkflowRegistry",
    "EngineConfig",
    "Worker",
    "InMemoryQueueService",
    "LocalRPCService",
    "JobOptions",
    # Wires
    "WorkflowWire",
    "StepWire",
    "GraphWire",
    # Outcomes
    "RunOutcome",
    "Completed",
    "Suspended",
    "Cancelled",
    "Failed",
    "SuspendReason",
    # Models
    "RunStatus",
    "StepStatus",
    "WorkflowRun",
    "StepState",
    "StepHistoryEntry",
    "StepOptions",
    "SerializedError",
    "RetryPolicy",
    "GraphNode",
    "WorkflowMeta",
    "ref",
    "template",
    # Storage
    "WorkflowStore",
    "StorageError",
    "InMemoryWorkflowStore",
    # Errors
    "WorkflowError",
    "WorkflowNotFoundError",
    "WorkflowRunNotFoundError",
    "WorkflowServiceNotInitialized",
    "WorkflowStepNameNotString",
    "MissingGraphMetadataError",
    "GraphValidationError",
    "AmbiguousTemplateMatchError",
    "RPCNotFoundError",
    "StepFailedError",
    "WorkflowFailedError",
    "WorkflowCancelledError",
]
