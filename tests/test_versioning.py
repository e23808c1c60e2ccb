"""Tests for definition versions pinned to in-flight runs."""

from pyweft import Failed, GraphNode, RunStatus, WorkflowMeta


def linear(second: str) -> WorkflowMeta:
    return WorkflowMeta(
        name="linear",
        nodes={"a": GraphNode(rpc_name="echo", next=second), second: GraphNode(rpc_name="echo")},
        entry_node_ids=["a"],
    )


async def test_start_stores_version(engine, registry, in_memory_store):
    definition = registry.register_graph(linear("b"))
    run_id = await engine.start_workflow("linear", 1)

    run = await engine.get_run(run_id)
    assert run.graph_hash == definition.graph_hash
    version = await in_memory_store.get_workflow_version("linear", definition.graph_hash)
    assert version.to_meta().nodes == definition.meta.nodes


async def test_graph_run_continues_on_its_own_version(queued_engine, registry, worker):
    registry.register_graph(linear("b"))
    run_id = await queued_engine.start_workflow("linear", 1)

    # Redeploy with a different successor while the run is in flight
    registry.register_graph(linear("c"))
    await worker.run_until_idle()

    run = await queued_engine.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert set(run.output) == {"a", "b"}


async def test_new_runs_use_new_version(queued_engine, registry, worker):
    registry.register_graph(linear("b"))
    registry.register_graph(linear("c"))
    run_id = await queued_engine.start_workflow("linear", 1)
    await worker.run_until_idle()

    assert set((await queued_engine.get_run(run_id)).output) == {"a", "c"}


async def test_changed_function_fails_with_version_conflict(engine, registry):
    async def first_version(data, workflow):
        await workflow.suspend("wait")
        return "v1"

    async def second_version(data, workflow):
        await workflow.suspend("wait")
        return "v2"

    registry.register("approval", first_version)
    run_id = await engine.start_workflow("approval")

    registry.register("approval", second_version)
    await engine.resume_run(run_id)

    run = await engine.get_run(run_id)
    assert run.status == RunStatus.FAILED
    assert run.error.code == "VERSION_CONFLICT"


async def test_unknown_version_fails_run(engine, registry, in_memory_store):
    async def body(data, workflow):
        return "done"

    registry.register("approval", body)
    run_id = await in_memory_store.create_run("approval", None, inline=True, graph_hash="deadbeef")

    outcome = await engine.run_workflow_job(run_id)
    assert isinstance(outcome, Failed)
    assert outcome.error.code == "VERSION_NOT_FOUND"
    assert (await engine.get_run(run_id)).status == RunStatus.FAILED


async def test_register_workflow_versions(engine, registry, in_memory_store):
    definition = registry.register_graph(linear("b"))
    await engine.register_workflow_versions()
    assert await in_memory_store.get_workflow_version("linear", definition.graph_hash)
