"""
Run outcomes and the control-flow signals that produce them.

Inside a workflow body, ``do``/``sleep``/``suspend``/``cancel`` stop the
replay by raising a signal. Signals inherit from BaseException (not
Exception), like StopIteration and GeneratorExit, so a workflow's own
``except Exception:`` cannot swallow them.

``WorkflowEngine.run_workflow_job`` catches them at the orchestrator
boundary and returns a ``RunOutcome`` instead, so callers pattern-match on
a value rather than handling flow control as errors.

Example:
    ```python
    outcome = await engine.run_workflow_job(run_id)

    match outcome:
        case Completed(output):
            print(f"Run completed: {output}")
        case Suspended(reason):
            print(f"Run paused: {reason}")
        case Cancelled(reason):
            print(f"Run cancelled: {reason}")
        case Failed(error):
            print(f"Run failed: {error.message}")
    ```
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pyweft.models import SerializedError

__all__ = [
    "SuspendReason",
    "Completed",
    "Suspended",
    "Cancelled",
    "Failed",
    "RunOutcome",
    "is_completed",
    "is_suspended",
]

R = TypeVar("R")


# =============================================================================
# Control Flow Signals (Not Errors)
# =============================================================================


class _WorkflowControl(BaseException):
    """Base class for workflow control signals."""

    def __init__(self, run_id: str):
        super().__init__(run_id)
        self.run_id = run_id


class _AwaitStep(_WorkflowControl):  # noqa: N818
    """The replay reached a step that has not resolved yet.

    The run stays RUNNING; whoever resolves the step resumes the
    orchestrator.
    """

    def __init__(self, run_id: str, step_name: str):
        super().__init__(run_id)
        self.step_name = step_name


class _SuspendRun(_WorkflowControl):  # noqa: N818
    """The run was moved to SUSPENDED and needs an explicit resume."""

    def __init__(self, run_id: str, error: SerializedError, step_name: str | None = None):
        super().__init__(run_id)
        self.error = error
        self.step_name = step_name


class _CancelRun(_WorkflowControl):  # noqa: N818
    """The run was marked CANCELLED; status is already persisted."""

    def __init__(self, run_id: str, reason: str | None = None):
        super().__init__(run_id)
        self.reason = reason


# =============================================================================
# Outcomes
# =============================================================================


@dataclass(frozen=True)
class SuspendReason:
    """
    Why a replay stopped before the workflow returned.

    Attributes:
        run_id: The run
        step_name: Step the replay stopped at, if any
        code: Run-level code when the run itself was suspended
            (``WORKFLOW_SUSPENDED``, ``RPC_NOT_FOUND``); None while simply
            awaiting a step
        message: Human readable message for suspended runs
    """

    run_id: str
    step_name: str | None = None
    code: str | None = None
    message: str | None = None

    def is_awaiting_step(self) -> bool:
        """True if the run is still RUNNING and parked on a step."""
        return self.code is None

    def is_run_suspended(self) -> bool:
        """True if the run moved to SUSPENDED and needs an explicit resume."""
        return self.code is not None

    def __str__(self) -> str:
        if self.is_awaiting_step():
            return f"AwaitingStep(run_id={self.run_id}, step_name={self.step_name!r})"
        return f"Suspended(run_id={self.run_id}, code={self.code}, message={self.message!r})"


@dataclass(frozen=True)
class Completed(Generic[R]):
    """The workflow returned; ``output`` is persisted on the run."""

    output: R

    def __str__(self) -> str:
        return f"Completed(output={self.output!r})"


@dataclass(frozen=True)
class Suspended:
    """The replay stopped and will be resumed later."""

    reason: SuspendReason

    def __str__(self) -> str:
        return f"Suspended({self.reason})"


@dataclass(frozen=True)
class Cancelled:
    """The run was cancelled."""

    reason: str | None = None


@dataclass(frozen=True)
class Failed:
    """The run failed; ``error`` is persisted on the run.

    ``exception`` is the original exception when the failure happened in
    this process.
    """

    error: SerializedError
    exception: BaseException | None = None

    def __str__(self) -> str:
        return f"Failed(error={self.error.name}: {self.error.message})"


RunOutcome = Completed[Any] | Suspended | Cancelled | Failed


def is_completed(outcome: RunOutcome) -> bool:
    return isinstance(outcome, Completed)


def is_suspended(outcome: RunOutcome) -> bool:
    return isinstance(outcome, Suspended)
