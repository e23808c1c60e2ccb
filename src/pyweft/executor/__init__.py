"""
Executor module - runtime engine for durable workflows.

- engine: step orchestration core (WorkflowEngine)
- steps: do/sleep/suspend/cancel primitives behind WorkflowWire
- graph: declarative graph validation and execution
- outcome: RunOutcome state machine (Completed/Suspended/Cancelled/Failed)
- queue, worker: in-memory queue service and the worker draining it
"""

from pyweft.executor.config import EngineConfig
from pyweft.executor.engine import WorkflowEngine
from pyweft.executor.outcome import (
    Cancelled,
    Completed,
    Failed,
    RunOutcome,
    Suspended,
    SuspendReason,
    is_completed,
    is_suspended,
)
from pyweft.executor.queue import InMemoryQueueService, Job
from pyweft.executor.registry import WorkflowDefinition, WorkflowRegistry
from pyweft.executor.services import (
    JobOptions,
    LocalRPCService,
    QueueService,
    RPCService,
    SchedulerService,
)
from pyweft.executor.wire import GraphWire, StepWire, Wire, WorkflowWire
from pyweft.executor.worker import Worker, WorkerError, WorkerHandle

__all__ = [
    "EngineConfig",
    "WorkflowEngine",
    "WorkflowRegistry",
    "WorkflowDefinition",
    # RunOutcome state machine
    "RunOutcome",
    "Completed",
    "Suspended",
    "Cancelled",
    "Failed",
    "SuspendReason",
    "is_completed",
    "is_suspended",
    # Wires
    "Wire",
    "WorkflowWire",
    "StepWire",
    "GraphWire",
    # Collaborators
    "RPCService",
    "QueueService",
    "SchedulerService",
    "JobOptions",
    "LocalRPCService",
    "InMemoryQueueService",
    "Job",
    "Worker",
    "WorkerHandle",
    "WorkerError",
]
