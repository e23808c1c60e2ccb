"""SQLite-specific behavior: persistence across connections and full runs."""

from pyweft import (
    GraphNode,
    InMemoryQueueService,
    RunStatus,
    StepStatus,
    Worker,
    WorkflowEngine,
    WorkflowMeta,
    ref,
)
from pyweft.storage import SqliteWorkflowStore


async def test_repr():
    store = await SqliteWorkflowStore.in_memory()
    try:
        assert repr(store) == "SqliteWorkflowStore(in-memory)"
    finally:
        await store.close()
    assert repr(SqliteWorkflowStore("/tmp/runs.db")) == "SqliteWorkflowStore(/tmp/runs.db)"


async def test_runs_survive_reconnect(temp_db_path):
    store = SqliteWorkflowStore(str(temp_db_path))
    await store.connect()
    run_id = await store.create_run("order", {"id": 7})
    step = await store.insert_step_state(run_id, "charge", "charge", {"amount": 5})
    await store.set_step_result(step.step_id, {"paid": True})
    await store.update_run_state(run_id, "note", "first")
    await store.close()

    reopened = SqliteWorkflowStore(str(temp_db_path))
    await reopened.connect()
    try:
        run = await reopened.get_run(run_id)
        assert run.input == {"id": 7}
        state = await reopened.get_step_state(run_id, "charge")
        assert state.status == StepStatus.SUCCEEDED
        assert state.result == {"paid": True}
        assert await reopened.get_run_state(run_id) == {"note": "first"}
    finally:
        await reopened.close()


async def test_engine_completes_inline_run(sqlite_file_store, registry, rpc, calls):
    engine = WorkflowEngine(sqlite_file_store, registry, rpc)

    @registry.workflow("doubler")
    async def doubler(data, workflow):
        first = await workflow.do("first", "double", data)
        return await workflow.do("second", "double", first)

    assert await engine.run_to_completion("doubler", 3) == 12
    assert calls["double"] == 2


async def test_queued_graph_run(sqlite_file_store, registry, rpc):
    queue = InMemoryQueueService()
    engine = (
        WorkflowEngine(sqlite_file_store, registry, rpc).with_queue(queue).with_scheduler(queue)
    )
    registry.register_graph(
        WorkflowMeta(
            name="pipeline",
            nodes={
                "load": GraphNode(rpc_name="echo", next="store"),
                "store": GraphNode(rpc_name="echo", input={"loaded": ref("load")}),
            },
            entry_node_ids=["load"],
        )
    )

    run_id = await engine.start_workflow("pipeline", {"rows": 3})
    await Worker(engine, queue, "sqlite-worker").run_until_idle()

    run = await engine.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.output["store"] == {"loaded": {"rows": 3}}
