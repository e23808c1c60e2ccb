"""
Concurrency tests.

Replays of one run never overlap, and concurrent deliveries of one step
execute its RPC once.
"""

import asyncio

import pytest

from pyweft import LocalRPCService, RunStatus, WorkflowEngine, WorkflowRegistry
from pyweft.storage import LockTimeoutError, SqliteWorkflowStore


@pytest.mark.concurrency
async def test_replays_of_one_run_never_overlap(engine, registry, in_memory_store):
    active = 0
    peak = 0

    @registry.workflow("guarded")
    async def guarded(data, workflow):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return await workflow.do("double", "double", data)

    definition = registry.get("guarded")
    run_id = await in_memory_store.create_run(
        "guarded", 2, inline=True, graph_hash=definition.graph_hash
    )
    await asyncio.gather(*(engine.run_workflow_job(run_id) for _ in range(5)))

    assert peak == 1
    run = await engine.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.output == 4


@pytest.mark.concurrency
async def test_duplicate_step_deliveries_execute_once(
    queued_engine, registry, rpc, in_memory_store
):
    executions = 0

    async def slow(data, wire):
        nonlocal executions
        executions += 1
        await asyncio.sleep(0.01)
        return data

    rpc.register("slow", slow)

    @registry.workflow("single")
    async def single(data, workflow):
        return await workflow.do("only", "slow", data)

    run_id = await in_memory_store.create_run(
        "single", "x", graph_hash=registry.get("single").graph_hash
    )
    results = await asyncio.gather(
        *(queued_engine.execute_workflow_step(run_id, "only", "slow", "x") for _ in range(3))
    )

    assert executions == 1
    assert results == ["x", "x", "x"]


@pytest.mark.concurrency
async def test_many_runs_in_parallel(engine, registry, calls):
    @registry.workflow("doubler")
    async def doubler(data, workflow):
        return await workflow.do("double", "double", data)

    outputs = await asyncio.gather(*(engine.run_to_completion("doubler", n) for n in range(10)))
    assert outputs == [n * 2 for n in range(10)]
    assert calls["double"] == 10


@pytest.mark.concurrency
async def test_sqlite_lock_shared_between_connections(temp_db_path):
    first = SqliteWorkflowStore(str(temp_db_path), lock_timeout=0.1)
    second = SqliteWorkflowStore(str(temp_db_path), lock_timeout=0.1)
    await first.connect()
    await second.connect()
    try:
        run_id = await first.create_run("order", None)
        async with first.run_lock(run_id):
            with pytest.raises(LockTimeoutError):
                async with second.run_lock(run_id):
                    pass
        async with second.run_lock(run_id):
            pass
    finally:
        await first.close()
        await second.close()


@pytest.mark.concurrency
async def test_slow_replay_keeps_sqlite_run_lock(temp_db_path):
    store = SqliteWorkflowStore(str(temp_db_path), lock_ttl=0.2)
    await store.connect()
    registry = WorkflowRegistry()
    rpc = LocalRPCService()
    active = 0
    peak = 0
    executions = 0

    async def slow(data, wire):
        nonlocal active, peak, executions
        executions += 1
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.6)
        active -= 1
        return data

    rpc.register("slow", slow)

    @registry.workflow("slow-run")
    async def slow_run(data, workflow):
        return await workflow.do("only", "slow", data)

    engine = WorkflowEngine(store, registry, rpc)
    try:
        run_id = await store.create_run(
            "slow-run", "x", inline=True, graph_hash=registry.get("slow-run").graph_hash
        )
        await asyncio.gather(engine.run_workflow_job(run_id), engine.run_workflow_job(run_id))

        assert peak == 1
        assert executions == 1
        assert (await engine.get_run(run_id)).status == RunStatus.COMPLETED
    finally:
        await store.close()
