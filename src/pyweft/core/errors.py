"""Workflow error taxonomy.

Configuration errors (unknown workflow, missing services, invalid graphs)
are raised at the call that triggered them and never retried. Business
errors raised by step RPCs propagate unchanged; ``StepFailedError`` only
rehydrates one that was cached by an earlier attempt.
"""

from __future__ import annotations

from pyweft.models.run import SerializedError


class WorkflowError(Exception):
    """Base class for errors raised by the workflow engine."""

    code: str | None = None


class WorkflowNotFoundError(WorkflowError):
    code = "WORKFLOW_NOT_FOUND"

    def __init__(self, name: str):
        super().__init__(f"Workflow not found: {name}")
        self.name = name


class WorkflowRunNotFoundError(WorkflowError):
    code = "WORKFLOW_RUN_NOT_FOUND"

    def __init__(self, run_id: str):
        super().__init__(f"Workflow run not found: {run_id}")
        self.run_id = run_id


class WorkflowServiceNotInitialized(WorkflowError):  # noqa: N818
    """A collaborator the current operation needs was never configured."""

    code = "WORKFLOW_SERVICE_NOT_INITIALIZED"


class WorkflowStepNameNotString(WorkflowError):  # noqa: N818
    code = "WORKFLOW_STEP_NAME_NOT_STRING"

    def __init__(self, step_name: object):
        super().__init__(f"Workflow step name must be a string, got {type(step_name).__name__}")
        self.step_name = step_name


class MissingGraphMetadataError(WorkflowError):
    code = "MISSING_GRAPH_METADATA"


class GraphValidationError(WorkflowError):
    """A graph references nodes it does not declare."""

    code = "GRAPH_VALIDATION_FAILED"


class AmbiguousTemplateMatchError(GraphValidationError):
    """A runtime name matched more than one templated node id."""

    def __init__(self, kind: str, name: str, candidates: list[str]):
        super().__init__(f"ambiguous template {kind} match for '{name}'")
        self.name = name
        self.candidates = candidates


class RPCNotFoundError(WorkflowError):
    """The RPC a step targets is not deployed.

    Distinguished from business errors: the engine suspends the run
    instead of failing it.
    """

    code = "RPC_NOT_FOUND"

    def __init__(self, rpc_name: str):
        super().__init__(f"RPC function not found: {rpc_name}")
        self.rpc_name = rpc_name


class StepFailedError(WorkflowError):
    """A step's cached failure, replayed from storage."""

    def __init__(self, step_name: str, error: SerializedError):
        super().__init__(error.message)
        self.step_name = step_name
        self.error = error
        self.code = error.code


class WorkflowFailedError(WorkflowError):
    """Raised to callers waiting on a run that ended failed."""

    def __init__(self, run_id: str, error: SerializedError | None):
        super().__init__(error.message if error else f"Workflow run {run_id} failed")
        self.run_id = run_id
        self.error = error
        self.code = error.code if error else None


class WorkflowCancelledError(WorkflowError):
    """Raised to callers waiting on a run that ended cancelled."""

    code = "WORKFLOW_CANCELLED"

    def __init__(self, run_id: str, reason: str | None = None):
        super().__init__(reason or f"Workflow run {run_id} was cancelled")
        self.run_id = run_id
        self.reason = reason
