"""
Tests for imperative workflows executed in-process.

Covers step caching across replays, retries, suspension, cancellation,
missing RPCs and run-scoped state.
"""

import asyncio

import pytest

from pyweft import (
    Completed,
    RunStatus,
    StepOptions,
    StepStatus,
    Suspended,
    WorkflowCancelledError,
    WorkflowError,
    WorkflowFailedError,
    WorkflowNotFoundError,
    WorkflowRunNotFoundError,
    WorkflowServiceNotInitialized,
)


async def test_single_step_workflow(engine, registry, calls):
    @registry.workflow("doubler")
    async def doubler(data, workflow):
        return await workflow.do("double", "double", data)

    assert await engine.run_to_completion("doubler", 21) == 42
    assert calls["double"] == 1


async def test_step_results_feed_later_steps(engine, registry):
    @registry.workflow("pipeline")
    async def pipeline(data, workflow):
        first = await workflow.do("first", "double", data)
        second = await workflow.do("second", "double", first)
        return {"first": first, "second": second}

    assert await engine.run_to_completion("pipeline", 3) == {"first": 6, "second": 12}


async def test_completed_steps_are_not_reexecuted_on_resume(engine, registry, calls):
    @registry.workflow("approval")
    async def approval(data, workflow):
        before = await workflow.do("before", "echo", "a")
        await workflow.suspend("waiting for approval")
        after = await workflow.do("after", "echo", "b")
        return [before, after]

    run_id = await engine.start_workflow("approval")
    run = await engine.get_run(run_id)
    assert run.status == RunStatus.SUSPENDED
    assert run.error.code == "WORKFLOW_SUSPENDED"
    assert run.error.message == "waiting for approval"
    assert calls["echo"] == 1

    await engine.resume_run(run_id)
    run = await engine.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.output == ["a", "b"]
    assert run.error is None
    assert calls["echo"] == 2


async def test_replaying_completed_run_is_a_no_op(engine, registry, calls):
    @registry.workflow("doubler")
    async def doubler(data, workflow):
        return await workflow.do("double", "double", data)

    run_id = await engine.start_workflow("doubler", 5)
    outcome = await engine.run_workflow_job(run_id)

    assert isinstance(outcome, Completed)
    assert outcome.output == 10
    assert calls["double"] == 1


async def test_retries_until_success(engine, registry, rpc):
    attempts = []

    async def flaky(data, wire):
        attempts.append(wire.attempt_count)
        if len(attempts) < 3:
            raise ConnectionError("transient")
        return "ok"

    rpc.register("flaky", flaky)

    @registry.workflow("retrying")
    async def retrying(data, workflow):
        return await workflow.do("call", "flaky", None, StepOptions(retries=2, retry_delay=0))

    run_id = await engine.start_workflow("retrying")
    run = await engine.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.output == "ok"
    assert attempts == [1, 2, 3]

    history = await engine.get_run_history(run_id)
    assert [entry.status for entry in history] == [
        StepStatus.FAILED,
        StepStatus.FAILED,
        StepStatus.SUCCEEDED,
    ]
    assert history[-1].attempt_count == 3


async def test_exhausted_retries_fail_the_run(engine, registry, calls):
    @registry.workflow("doomed")
    async def doomed(data, workflow):
        return await workflow.do("call", "fail", None, StepOptions(retries=1, retry_delay=0))

    with pytest.raises(WorkflowFailedError, match="boom"):
        await engine.run_to_completion("doomed")
    assert calls["fail"] == 2


async def test_workflow_can_handle_step_failure(engine, registry):
    @registry.workflow("forgiving")
    async def forgiving(data, workflow):
        try:
            await workflow.do("call", "fail")
        except ValueError:
            return "recovered"

    assert await engine.run_to_completion("forgiving") == "recovered"


async def test_engine_default_retries_apply(in_memory_store, registry, rpc, calls):
    from pyweft import EngineConfig, WorkflowEngine

    engine = WorkflowEngine(in_memory_store, registry, rpc, config=EngineConfig(retries=2))

    @registry.workflow("doomed")
    async def doomed(data, workflow):
        return await workflow.do("call", "fail")

    with pytest.raises(WorkflowFailedError):
        await engine.run_to_completion("doomed")
    assert calls["fail"] == 3


async def test_inline_callable_steps(engine, registry):
    executed = []

    def sync_step():
        executed.append("sync")
        return 1

    async def async_step():
        executed.append("async")
        return 2

    @registry.workflow("local")
    async def local(data, workflow):
        a = await workflow.do("sync", sync_step)
        b = await workflow.do("async", async_step)
        await workflow.suspend("pause")
        return a + b

    run_id = await engine.start_workflow("local")
    await engine.resume_run(run_id)

    assert (await engine.get_run(run_id)).output == 3
    assert executed == ["sync", "async"]


async def test_step_name_must_be_a_string(engine, registry):
    @registry.workflow("sloppy")
    async def sloppy(data, workflow):
        return await workflow.do(42, "echo", data)

    with pytest.raises(WorkflowFailedError) as exc_info:
        await engine.run_to_completion("sloppy")
    assert exc_info.value.error.name == "WorkflowStepNameNotString"


async def test_cancel_from_inside_workflow(engine, registry, calls):
    @registry.workflow("cancelling")
    async def cancelling(data, workflow):
        await workflow.cancel("customer changed their mind")
        await workflow.do("never", "echo", None)

    with pytest.raises(WorkflowCancelledError, match="changed their mind"):
        await engine.run_to_completion("cancelling")
    assert "echo" not in calls


async def test_cancel_suspended_run(engine, registry):
    @registry.workflow("paused")
    async def paused(data, workflow):
        await workflow.suspend("hold")
        return "done"

    run_id = await engine.start_workflow("paused")
    await engine.cancel_run(run_id, "no longer needed")

    run = await engine.get_run(run_id)
    assert run.status == RunStatus.CANCELLED
    assert run.error.code == "WORKFLOW_CANCELLED"

    with pytest.raises(WorkflowError):
        await engine.resume_run(run_id)


async def test_cancel_completed_run_is_ignored(engine, registry):
    @registry.workflow("quick")
    async def quick(data, workflow):
        return 1

    run_id = await engine.start_workflow("quick")
    await engine.cancel_run(run_id)
    assert (await engine.get_run(run_id)).status == RunStatus.COMPLETED


async def test_missing_rpc_suspends_then_resumes(engine, registry, rpc):
    @registry.workflow("deploying")
    async def deploying(data, workflow):
        return await workflow.do("call", "notDeployedYet", data)

    run_id = await engine.start_workflow("deploying", 7)
    run = await engine.get_run(run_id)
    assert run.status == RunStatus.SUSPENDED
    assert run.error.code == "RPC_NOT_FOUND"
    assert run.error.message == (
        "RPC 'notDeployedYet' not found. Deploy the missing function and resume."
    )

    async def late(data, wire):
        return data + 1

    rpc.register("notDeployedYet", late)
    await engine.resume_run(run_id)

    run = await engine.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.output == 8
    history = await engine.get_run_history(run_id)
    assert [entry.status for entry in history] == [StepStatus.FAILED, StepStatus.SUCCEEDED]


async def test_inline_sleep(engine, registry):
    @registry.workflow("napping")
    async def napping(data, workflow):
        await workflow.sleep("nap", "10ms")
        return "awake"

    run_id = await engine.start_workflow("napping")
    assert (await engine.get_run(run_id)).output == "awake"
    history = await engine.get_run_history(run_id)
    assert history[0].step_name == "nap"
    assert history[0].status == StepStatus.SUCCEEDED


async def test_run_state(engine, registry):
    @registry.workflow("stateful")
    async def stateful(data, workflow):
        await workflow.set_state("seen", data)
        state = await workflow.get_state()
        run = await workflow.get_run()
        return {"state": state, "name": run.workflow_name}

    output = await engine.run_to_completion("stateful", "x")
    assert output == {"state": {"seen": "x"}, "name": "stateful"}


async def test_run_workflow_job_reports_suspension(engine, registry):
    @registry.workflow("paused")
    async def paused(data, workflow):
        await workflow.suspend("hold")

    run_id = await engine.start_workflow("paused")
    outcome = await engine.run_workflow_job(run_id)
    assert isinstance(outcome, Suspended)
    assert outcome.reason.code == "WORKFLOW_SUSPENDED"


async def test_unknown_workflow_and_run(engine):
    with pytest.raises(WorkflowNotFoundError):
        await engine.start_workflow("nope")
    with pytest.raises(WorkflowRunNotFoundError):
        await engine.get_run("missing")
    with pytest.raises(WorkflowRunNotFoundError):
        await engine.resume_run("missing")


async def test_rpc_service_required(in_memory_store, registry):
    from pyweft import WorkflowEngine

    engine = WorkflowEngine(in_memory_store, registry)

    @registry.workflow("needs_rpc")
    async def needs_rpc(data, workflow):
        return await workflow.do("call", "echo", data)

    with pytest.raises(WorkflowFailedError) as exc_info:
        await engine.run_to_completion("needs_rpc")
    assert exc_info.value.error.name == WorkflowServiceNotInitialized.__name__


async def test_drain_and_close(engine, registry):
    @registry.workflow("quick")
    async def quick(data, workflow):
        return 1

    await engine.run_to_completion("quick")
    assert engine.outstanding_inline_runs == frozenset()
    await engine.drain(timeout=1.0)
    await engine.close()


async def test_drain_waits_for_executing_inline_run(engine, registry, rpc):
    release = asyncio.Event()

    async def gated(data, wire):
        await release.wait()
        return data

    rpc.register("gated", gated)

    @registry.workflow("slow")
    async def slow(data, workflow):
        return await workflow.do("wait", "gated", data)

    start = asyncio.create_task(engine.start_workflow("slow", "x", inline=True))
    while not engine.outstanding_inline_runs:
        await asyncio.sleep(0.01)
    [run_id] = engine.outstanding_inline_runs

    drain = asyncio.create_task(engine.drain(timeout=5.0))
    await asyncio.sleep(0.1)
    assert not drain.done()

    release.set()
    await drain
    assert engine.outstanding_inline_runs == frozenset()
    assert await start == run_id
    assert (await engine.get_run(run_id)).output == "x"
