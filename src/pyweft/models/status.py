"""Status enumerations for workflow runs and steps.

Defines lifecycle states for whole runs and for individual
step attempts stored in the execution history.
"""

from enum import Enum


class RunStatus(Enum):
    """Status of a workflow run.

    Lifecycle:
        RUNNING → SUSPENDED → RUNNING → COMPLETED/FAILED/CANCELLED

    A run only leaves SUSPENDED through an explicit resume. Waiting for a
    queued step does not suspend the run: it stays RUNNING while the
    orchestrator is parked.
    """

    RUNNING = "running"
    """Run is active; the orchestrator may replay it."""

    SUSPENDED = "suspended"
    """Run is paused until someone resumes it."""

    COMPLETED = "completed"
    """Run finished with an output."""

    FAILED = "failed"
    """Run failed with a serialized error."""

    CANCELLED = "cancelled"
    """Run was cancelled from inside or outside the workflow."""

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no more work will happen)."""
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)

    @property
    def is_end_state(self) -> bool:
        """Check if a caller waiting on the run should stop waiting."""
        return self.is_terminal or self == RunStatus.SUSPENDED

    def __str__(self) -> str:
        return self.value


class StepStatus(Enum):
    """Status of a single step attempt.

    Lifecycle:
        PENDING → SCHEDULED/RUNNING → SUCCEEDED/FAILED

    SUCCEEDED is permanent for a step: the result is the cache entry that
    every later replay returns.
    """

    PENDING = "pending"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.FAILED)

    @property
    def is_in_progress(self) -> bool:
        return self in (StepStatus.PENDING, StepStatus.SCHEDULED, StepStatus.RUNNING)

    def __str__(self) -> str:
        return self.value
