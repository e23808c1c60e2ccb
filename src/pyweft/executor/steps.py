"""
Step primitives behind ``WorkflowWire``.

Each primitive looks up the step's current attempt and either returns the
cached outcome or performs the next unit of work:

    SUCCEEDED                → return cached result
    FAILED, attempts left    → await redelivery (queue mode)
    FAILED, exhausted        → raise StepFailedError
    SCHEDULED                → await the step worker
    PENDING / RUNNING        → dispatch (queue mode) or execute inline

Stopping the replay is done with the control-flow signals from
``pyweft.executor.outcome``; they are never visible to callers of the
engine.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from pyweft.core.duration import Duration, duration_to_ms
from pyweft.core.errors import RPCNotFoundError, StepFailedError, WorkflowStepNameNotString
from pyweft.executor.outcome import _AwaitStep, _CancelRun, _SuspendRun
from pyweft.models import RunStatus, SerializedError, StepOptions, StepState, StepStatus

if TYPE_CHECKING:
    from pyweft.executor.wire import StepWire, WorkflowWire

logger = logging.getLogger(__name__)

SUSPEND_STEP_NAME = "__workflow_suspend"

WORKFLOW_SUSPENDED = "WORKFLOW_SUSPENDED"
WORKFLOW_CANCELLED = "WORKFLOW_CANCELLED"


async def do_step(
    workflow: WorkflowWire,
    step_name: str,
    rpc: str | Callable[[], Any],
    data: Any = None,
    options: StepOptions | None = None,
) -> Any:
    if not isinstance(step_name, str):
        raise WorkflowStepNameNotString(step_name)
    if isinstance(rpc, str):
        return await rpc_step(workflow, step_name, rpc, data, options)
    if callable(rpc):
        return await inline_step(workflow, step_name, rpc, data, options)
    raise TypeError(f"Step '{step_name}' needs an RPC name or a callable, got {type(rpc).__name__}")


async def _load_step(
    workflow: WorkflowWire,
    step_name: str,
    rpc_name: str | None,
    data: Any,
    options: StepOptions | None,
) -> StepState:
    store = workflow.engine.store
    step = await store.get_step_state(workflow.run_id, step_name)
    if step is None:
        step = await store.insert_step_state(
            workflow.run_id, step_name, rpc_name, data, workflow.engine.step_options(options)
        )
    return step


async def _retry_if_interrupted(workflow: WorkflowWire, step: StepState) -> StepState:
    """Open a new attempt for a step left failed with attempts remaining.

    Only used where this process owns the retry loop; in queue mode the
    queue redelivers instead.
    """
    if step.status == StepStatus.FAILED and not step.retries_exhausted:
        logger.debug(f"Resuming retries of step {step.step_name} for run {workflow.run_id}")
        return await workflow.engine.store.create_retry_attempt(step.step_id, StepStatus.PENDING)
    return step


def _cached(workflow: WorkflowWire, step: StepState) -> bool:
    """Return True if the step already succeeded; raise if it cannot run again."""
    if step.status == StepStatus.SUCCEEDED:
        logger.debug(f"Step {step.step_name} of run {workflow.run_id} cached, skipping")
        return True
    if step.status == StepStatus.FAILED:
        if step.retries_exhausted:
            error = step.error or SerializedError(message=f"Step '{step.step_name}' failed")
            raise StepFailedError(step.step_name, error)
        raise _AwaitStep(workflow.run_id, step.step_name)
    return False


async def rpc_step(
    workflow: WorkflowWire,
    step_name: str,
    rpc_name: str,
    data: Any,
    options: StepOptions | None,
) -> Any:
    engine = workflow.engine
    queued = engine.queue_service is not None and not workflow.inline
    step = await _load_step(workflow, step_name, rpc_name, data, options)
    if not queued:
        step = await _retry_if_interrupted(workflow, step)
    if _cached(workflow, step):
        return step.result

    if queued:
        if step.status in (StepStatus.SCHEDULED, StepStatus.RUNNING):
            raise _AwaitStep(workflow.run_id, step_name)
        await engine.store.set_step_scheduled(step.step_id)
        await engine.queue_step_worker(
            workflow.run_id, step_name, rpc_name, data, step.retry_policy
        )
        logger.debug(f"Queued step {step_name} ({rpc_name}) for run {workflow.run_id}")
        raise _AwaitStep(workflow.run_id, step_name)

    await engine.store.set_step_scheduled(step.step_id)

    async def invoke(wire: StepWire) -> Any:
        return await engine.rpc(rpc_name, data, wire)

    return await _execute_inline(workflow, step, invoke)


async def inline_step(
    workflow: WorkflowWire,
    step_name: str,
    func: Callable[[], Any],
    data: Any,
    options: StepOptions | None,
) -> Any:
    engine = workflow.engine
    step = await _load_step(workflow, step_name, None, data, options)
    step = await _retry_if_interrupted(workflow, step)
    if _cached(workflow, step):
        return step.result

    async def invoke(wire: StepWire) -> Any:
        result = func()
        if inspect.isawaitable(result):
            result = await result
        return result

    if engine.queue_service is None or workflow.inline:
        return await _execute_inline(workflow, step, invoke)

    # Queue mode: run once here, and hand retries back to the orchestrator queue
    await engine.store.set_step_running(step.step_id)
    try:
        result = await invoke(_step_wire(workflow, step))
    except Exception as e:
        await engine.store.set_step_error(step.step_id, e)
        delay = step.retry_policy.delay_for_attempt(step.attempt_count)
        if delay is None:
            raise
        logger.warning(
            f"Step {step_name} of run {workflow.run_id} failed "
            f"(attempt {step.attempt_count}), retrying in {delay}ms: {e}"
        )
        await engine.store.create_retry_attempt(step.step_id, StepStatus.PENDING)
        await engine.schedule_orchestrator_retry(workflow.run_id, delay)
        raise _AwaitStep(workflow.run_id, step_name) from None
    await engine.store.set_step_result(step.step_id, result)
    return result


async def _execute_inline(
    workflow: WorkflowWire,
    step: StepState,
    invoke: Callable[[StepWire], Awaitable[Any]],
) -> Any:
    """Execute a step in this process, retrying with fresh attempts."""
    engine = workflow.engine
    store = engine.store
    while True:
        await store.set_step_running(step.step_id)
        try:
            result = await invoke(_step_wire(workflow, step))
        except RPCNotFoundError as e:
            await store.set_step_error(step.step_id, e)
            raise await engine.suspend_for_missing_rpc(
                workflow.run_id, e.rpc_name, step.step_name
            ) from None
        except Exception as e:
            await store.set_step_error(step.step_id, e)
            delay = step.retry_policy.delay_for_attempt(step.attempt_count)
            if delay is None:
                logger.error(
                    f"Step {step.step_name} of run {workflow.run_id} failed after "
                    f"{step.attempt_count} attempt(s): {e}"
                )
                raise
            logger.warning(
                f"Step {step.step_name} of run {workflow.run_id} failed "
                f"(attempt {step.attempt_count}), retrying in {delay}ms: {e}"
            )
            if delay:
                await asyncio.sleep(delay / 1000)
            step = await store.create_retry_attempt(step.step_id, StepStatus.RUNNING)
            continue

        await store.set_step_result(step.step_id, result)
        return result


def _step_wire(workflow: WorkflowWire, step: StepState) -> StepWire:
    from pyweft.executor.wire import StepWire

    return StepWire(
        run_id=workflow.run_id,
        workflow_name=workflow.workflow_name,
        step_name=step.step_name,
        step_id=step.step_id,
        attempt_count=step.attempt_count,
    )


async def sleep_step(workflow: WorkflowWire, step_name: str, duration: Duration) -> None:
    if not isinstance(step_name, str):
        raise WorkflowStepNameNotString(step_name)
    engine = workflow.engine
    store = engine.store
    duration_ms = duration_to_ms(duration)

    step = await _load_step(workflow, step_name, None, {"duration": duration_ms}, None)
    if step.status == StepStatus.SUCCEEDED:
        return

    if engine.scheduler_service is not None and not workflow.inline:
        if step.status != StepStatus.SCHEDULED:
            await store.set_step_scheduled(step.step_id)
            await engine.scheduler_service.schedule_rpc(
                duration_ms,
                engine.config.sleeper_rpc_name,
                {"run_id": workflow.run_id, "step_id": step.step_id},
            )
            logger.debug(f"Scheduled sleep {step_name} ({duration_ms}ms) for run {workflow.run_id}")
        raise _AwaitStep(workflow.run_id, step_name)

    await store.set_step_running(step.step_id)
    await asyncio.sleep(duration_ms / 1000)
    await store.set_step_result(step.step_id, None)


async def suspend_step(workflow: WorkflowWire, reason: str, step_name: str) -> None:
    store = workflow.engine.store
    step = await store.get_step_state(workflow.run_id, step_name)
    if step is not None and step.status == StepStatus.SUCCEEDED:
        return
    if step is None:
        step = await store.insert_step_state(workflow.run_id, step_name, None, {"reason": reason})

    # Recorded as succeeded up front so the replay after resume passes through
    await store.set_step_result(step.step_id, None)
    error = SerializedError(message=reason, name="WorkflowSuspended", code=WORKFLOW_SUSPENDED)
    await store.update_run_status(workflow.run_id, RunStatus.SUSPENDED, error=error)
    logger.info(f"Run {workflow.run_id} suspended: {reason}")
    raise _SuspendRun(workflow.run_id, error, step_name)


async def cancel_step(workflow: WorkflowWire, reason: str | None) -> None:
    error = SerializedError(
        message=reason or "Workflow cancelled", name="WorkflowCancelled", code=WORKFLOW_CANCELLED
    )
    await workflow.engine.store.update_run_status(
        workflow.run_id, RunStatus.CANCELLED, error=error
    )
    logger.info(f"Run {workflow.run_id} cancelled: {error.message}")
    raise _CancelRun(workflow.run_id, reason)
