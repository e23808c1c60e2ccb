"""Core engine primitives: errors, durations and version hashing."""

from pyweft.core.duration import Duration, duration_to_ms
from pyweft.core.errors import (
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
from pyweft.core.hashing import hash_function, hash_graph

__all__ = [
    "Duration",
    "duration_to_ms",
    "hash_function",
    "hash_graph",
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
