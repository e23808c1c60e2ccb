"""Step state and step history records.

One logical step exists per (run_id, step_name) pair. Each attempt at that
step is an immutable history entry; the current attempt is exposed as a
``StepState``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pyweft.models.retry import RetryDelay, RetryPolicy
from pyweft.models.run import SerializedError
from pyweft.models.status import StepStatus


@dataclass(frozen=True)
class StepOptions:
    """Per-step execution options.

    ``None`` means "use the engine default" for both retry fields.
    """

    retries: int | None = None
    retry_delay: RetryDelay | None = None
    description: str | None = None


@dataclass(frozen=True)
class StepState:
    """Current attempt of a step.

    Attributes:
        step_id: Identifier of the current attempt
        run_id: Owning run
        step_name: Name the workflow gave the step (graph steps use node ids)
        status: Status of the current attempt
        rpc_name: RPC invoked by the step, if any
        data: Input the step was created with
        result: Cached result once succeeded
        error: Serialized error once failed
        attempt_count: Number of attempts so far (history length)
        retries: Retry bound for the step
        retry_delay: Fixed delay in milliseconds or ``"exponential"``
    """

    step_id: str
    run_id: str
    step_name: str
    status: StepStatus
    rpc_name: str | None = None
    data: Any = None
    result: Any = None
    error: SerializedError | None = None
    attempt_count: int = 1
    retries: int = 0
    retry_delay: RetryDelay = 0
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    running_at: datetime | None = None
    scheduled_at: datetime | None = None
    succeeded_at: datetime | None = None
    failed_at: datetime | None = None

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(retries=self.retries, retry_delay=self.retry_delay)

    @property
    def retries_exhausted(self) -> bool:
        """Check if the step has used every attempt it is allowed."""
        return self.attempt_count >= self.retry_policy.max_attempts

    def __repr__(self) -> str:
        return (
            f"StepState(step_name={self.step_name}, status={self.status}, "
            f"attempt_count={self.attempt_count}, retries={self.retries})"
        )


@dataclass(frozen=True)
class StepHistoryEntry:
    """Immutable snapshot of one step attempt, in creation order."""

    step_id: str
    step_name: str
    status: StepStatus
    rpc_name: str | None = None
    result: Any = None
    error: SerializedError | None = None
    attempt_count: int = 1
    created_at: datetime = field(default_factory=datetime.now)
    running_at: datetime | None = None
    scheduled_at: datetime | None = None
    succeeded_at: datetime | None = None
    failed_at: datetime | None = None

    @classmethod
    def from_state(cls, state: StepState) -> StepHistoryEntry:
        return cls(
            step_id=state.step_id,
            step_name=state.step_name,
            status=state.status,
            rpc_name=state.rpc_name,
            result=state.result,
            error=state.error,
            attempt_count=state.attempt_count,
            created_at=state.created_at,
            running_at=state.running_at,
            scheduled_at=state.scheduled_at,
            succeeded_at=state.succeeded_at,
            failed_at=state.failed_at,
        )
