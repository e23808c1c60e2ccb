"""Core data models for workflow execution.

Defines types for run and step state tracking, retry behavior and
declarative graph definitions.

Design: Dependency-Free Models
These types have no dependencies on core, storage or executor modules to
prevent circular imports and enable clean layering.
"""

from pyweft.models.graph import (
    TRIGGER,
    GraphNode,
    GraphState,
    Ref,
    Template,
    WorkflowMeta,
    WorkflowVersion,
    ref,
    template,
)
from pyweft.models.retry import EXPONENTIAL, Backoff, RetryPolicy
from pyweft.models.run import SerializedError, WorkflowRun
from pyweft.models.status import RunStatus, StepStatus
from pyweft.models.step import StepHistoryEntry, StepOptions, StepState

__all__ = [
    "RunStatus",
    "StepStatus",
    "WorkflowRun",
    "SerializedError",
    "StepState",
    "StepHistoryEntry",
    "StepOptions",
    "RetryPolicy",
    "Backoff",
    "EXPONENTIAL",
    "TRIGGER",
    "GraphNode",
    "GraphState",
    "Ref",
    "Template",
    "WorkflowMeta",
    "WorkflowVersion",
    "ref",
    "template",
]
