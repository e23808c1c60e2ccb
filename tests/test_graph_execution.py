"""
Tests for declarative graph workflows.

Each scenario runs in-process; the ones whose behavior depends on the
orchestrator/step-worker split also run through the queue.
"""

import pytest

from pyweft import (
    GraphNode,
    GraphValidationError,
    GraphWire,
    MissingGraphMetadataError,
    RunStatus,
    StepStatus,
    Suspended,
    WorkflowFailedError,
    WorkflowMeta,
    ref,
    template,
)
from pyweft.core.hashing import hash_graph


@pytest.fixture
def graph_rpc(rpc, calls):
    """Graph-specific RPC functions layered on the shared ``rpc`` fixture."""

    def register(name, func):
        async def wrapper(data, wire):
            calls[name] = calls.get(name, 0) + 1
            return await func(data, wire)

        rpc.register(name, wrapper)

    async def fetch_user(data, wire):
        assert isinstance(wire, GraphWire)
        return {"name": f"user-{data['id']}", "email": f"u{data['id']}@example.com"}

    async def greet(data, wire):
        return f"sent {data['subject']} to {data['to']}"

    async def check(data, wire):
        wire.branch("approved" if data["amount"] < 100 else "review")
        await wire.set_state("checked", data["amount"])
        return {"amount": data["amount"]}

    async def join(data, wire):
        return sorted(data["parts"])

    async def recover(data, wire):
        return {"recovered": data["error"]["message"]}

    register("fetchUser", fetch_user)
    register("greet", greet)
    register("check", check)
    register("join", join)
    register("recover", recover)
    return rpc


def onboarding() -> WorkflowMeta:
    return WorkflowMeta(
        name="onboarding",
        nodes={
            "fetch": GraphNode(rpc_name="fetchUser", next="greet"),
            "greet": GraphNode(
                rpc_name="greet",
                input={
                    "to": ref("fetch", "email"),
                    "subject": template("Welcome ", ref("fetch", "name")),
                },
            ),
        },
        entry_node_ids=["fetch"],
    )


def fan_out() -> WorkflowMeta:
    return WorkflowMeta(
        name="fan-out",
        nodes={
            "split": GraphNode(rpc_name="echo", next=["a", "b", "c"]),
            "a": GraphNode(rpc_name="echo", input={"v": 1}, next="join"),
            "b": GraphNode(rpc_name="echo", input={"v": 2}, next="join"),
            "c": GraphNode(rpc_name="echo", input={"v": 3}, next="join"),
            "join": GraphNode(
                rpc_name="join",
                input={"parts": [ref("a", "v"), ref("b", "v"), ref("c", "v")]},
            ),
        },
        entry_node_ids=["split"],
    )


def branching() -> WorkflowMeta:
    return WorkflowMeta(
        name="branching",
        nodes={
            "check": GraphNode(
                rpc_name="check", next={"approved": "approve", "review": ["review"]}
            ),
            "approve": GraphNode(rpc_name="echo", input={"ok": ref("check", "amount")}),
            "review": GraphNode(rpc_name="echo", input={"manual": True}),
        },
        entry_node_ids=["check"],
    )


def guarded(on_error: str | None = "recover") -> WorkflowMeta:
    return WorkflowMeta(
        name="guarded",
        nodes={
            "risky": GraphNode(rpc_name="fail", on_error=on_error),
            "recover": GraphNode(rpc_name="recover"),
        },
        entry_node_ids=["risky"],
    )


# ==============================================================================
# In-process execution
# ==============================================================================


async def test_refs_and_templates_flow_between_nodes(engine, registry, graph_rpc):
    registry.register_graph(onboarding())
    output = await engine.run_to_completion("onboarding", {"id": 7})

    assert output == {
        "fetch": {"name": "user-7", "email": "u7@example.com"},
        "greet": "sent Welcome user-7 to u7@example.com",
    }


async def test_fan_out_runs_join_once(engine, registry, graph_rpc, calls):
    registry.register_graph(fan_out())
    output = await engine.run_to_completion("fan-out", "go")

    assert calls["echo"] == 4
    assert calls["join"] == 1
    assert output["join"] == [1, 2, 3]


async def test_branch_only_follows_chosen_key(engine, registry, graph_rpc):
    registry.register_graph(branching())
    run_id = await engine.start_workflow("branching", {"amount": 10})

    run = await engine.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert set(run.output) == {"check", "approve"}
    assert run.output["approve"] == {"ok": 10}
    assert run.state == {"checked": 10}


async def test_other_branch(engine, registry, graph_rpc):
    registry.register_graph(branching())
    output = await engine.run_to_completion("branching", {"amount": 500})
    assert set(output) == {"check", "review"}


async def test_on_error_routes_after_failure(engine, registry, graph_rpc):
    registry.register_graph(guarded())
    run_id = await engine.start_workflow("guarded")

    run = await engine.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.output == {"recover": {"recovered": "boom"}}

    risky = await engine.store.get_step_state(run_id, "risky")
    assert risky.status == StepStatus.FAILED


async def test_on_error_waits_for_retries(engine, registry, graph_rpc, calls):
    meta = WorkflowMeta(
        name="guarded",
        nodes={
            "risky": GraphNode(rpc_name="fail", on_error="recover", retries=2, retry_delay=0),
            "recover": GraphNode(rpc_name="recover"),
        },
        entry_node_ids=["risky"],
    )
    registry.register_graph(meta)
    await engine.run_to_completion("guarded")

    assert calls["fail"] == 3
    assert calls["recover"] == 1


async def test_unhandled_node_failure_fails_run(engine, registry, graph_rpc):
    registry.register_graph(guarded(on_error=None))

    with pytest.raises(WorkflowFailedError) as exc_info:
        await engine.run_to_completion("guarded")

    assert exc_info.value.error.code == "GRAPH_NODE_FAILED"
    assert exc_info.value.error.message == "Graph node 'risky' failed: boom"


async def test_pass_through_node_records_its_input(engine, registry, graph_rpc):
    meta = WorkflowMeta(
        name="relay",
        nodes={
            "fetch": GraphNode(rpc_name="fetchUser", next="pick"),
            "pick": GraphNode(input={"email": ref("fetch", "email")}, next="send"),
            "send": GraphNode(rpc_name="echo", input={"to": ref("pick", "email")}),
        },
        entry_node_ids=["fetch"],
    )
    registry.register_graph(meta)
    output = await engine.run_to_completion("relay", {"id": 1})
    assert output["pick"] == {"email": "u1@example.com"}
    assert output["send"] == {"to": "u1@example.com"}


async def test_entry_node_receives_trigger(engine, registry, graph_rpc):
    meta = WorkflowMeta(
        name="single", nodes={"only": GraphNode(rpc_name="echo")}, entry_node_ids=["only"]
    )
    registry.register_graph(meta)
    assert await engine.run_to_completion("single", {"x": 1}) == {"only": {"x": 1}}


async def test_missing_rpc_suspends_graph_then_resumes(engine, registry, graph_rpc, rpc):
    meta = WorkflowMeta(
        name="deploying",
        nodes={
            "first": GraphNode(rpc_name="echo", next="second"),
            "second": GraphNode(rpc_name="notDeployedYet", input={"v": ref("first")}),
        },
        entry_node_ids=["first"],
    )
    registry.register_graph(meta)
    run_id = await engine.start_workflow("deploying", 5)

    run = await engine.get_run(run_id)
    assert run.status == RunStatus.SUSPENDED
    assert run.error.code == "RPC_NOT_FOUND"
    assert isinstance(await engine.run_workflow_job(run_id), Suspended)

    async def late(data, wire):
        return data["v"] + 1

    rpc.register("notDeployedYet", late)
    await engine.resume_run(run_id)

    run = await engine.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.output == {"first": 5, "second": 6}


async def test_run_workflow_graph_with_meta(engine, registry, graph_rpc):
    meta = onboarding()
    with pytest.raises(MissingGraphMetadataError):
        await engine.run_workflow_graph(meta, {"id": 1})

    hashed = WorkflowMeta(
        name=meta.name,
        nodes=meta.nodes,
        entry_node_ids=meta.entry_node_ids,
        graph_hash=hash_graph(meta),
    )
    run_id = await engine.run_workflow_graph(hashed, {"id": 1})
    run = await engine.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.graph_hash == hashed.graph_hash
    assert "onboarding" in registry


async def test_invalid_graph_rejected_at_registration(registry):
    meta = WorkflowMeta(
        name="broken", nodes={"a": GraphNode(rpc_name="echo", next="nowhere")}, entry_node_ids=["a"]
    )
    with pytest.raises(GraphValidationError):
        registry.register_graph(meta)


# ==============================================================================
# Queued execution
# ==============================================================================


async def test_queued_graph_completes(queued_engine, registry, graph_rpc, worker, queue):
    registry.register_graph(onboarding())
    run_id = await queued_engine.start_workflow("onboarding", {"id": 3})

    [job] = queue.pending(queued_engine.config.step_worker_queue_name)
    assert job.payload["step_name"] == "fetch"
    assert job.payload["data"] == {"id": 3}

    await worker.run_until_idle()
    run = await queued_engine.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.output["greet"] == "sent Welcome user-3 to u3@example.com"


async def test_queued_graph_not_complete_while_node_in_flight(
    queued_engine, registry, graph_rpc, worker
):
    registry.register_graph(onboarding())
    run_id = await queued_engine.start_workflow("onboarding", {"id": 3})

    outcome = await queued_engine.run_workflow_job(run_id)
    assert isinstance(outcome, Suspended)
    assert outcome.reason.step_name == "fetch"
    assert (await queued_engine.get_run(run_id)).status == RunStatus.RUNNING

    await worker.run_until_idle()
    assert (await queued_engine.get_run(run_id)).status == RunStatus.COMPLETED


async def test_queued_converging_node_dispatched_once(
    queued_engine, registry, graph_rpc, worker, calls
):
    registry.register_graph(fan_out())
    run_id = await queued_engine.start_workflow("fan-out", "go")
    await worker.run_until_idle()

    assert calls["join"] == 1
    history = await queued_engine.get_run_history(run_id)
    assert [entry.step_name for entry in history].count("join") == 1
    assert (await queued_engine.get_run(run_id)).status == RunStatus.COMPLETED


async def test_queued_on_error(queued_engine, registry, graph_rpc, worker, queue):
    registry.register_graph(guarded())
    run_id = await queued_engine.start_workflow("guarded")
    await worker.run_until_idle()

    run = await queued_engine.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.output == {"recover": {"recovered": "boom"}}
    assert queue.dead_letters == []


async def test_queued_unhandled_failure(queued_engine, registry, graph_rpc, worker):
    registry.register_graph(guarded(on_error=None))
    run_id = await queued_engine.start_workflow("guarded")
    await worker.run_until_idle()

    run = await queued_engine.get_run(run_id)
    assert run.status == RunStatus.FAILED
    assert run.error.code == "GRAPH_NODE_FAILED"


async def test_queued_missing_rpc_resume(queued_engine, registry, graph_rpc, rpc, worker):
    meta = WorkflowMeta(
        name="deploying",
        nodes={"only": GraphNode(rpc_name="notDeployedYet")},
        entry_node_ids=["only"],
    )
    registry.register_graph(meta)
    run_id = await queued_engine.start_workflow("deploying", 1)
    await worker.run_until_idle()
    assert (await queued_engine.get_run(run_id)).status == RunStatus.SUSPENDED

    async def late(data, wire):
        return data * 10

    rpc.register("notDeployedYet", late)
    await queued_engine.resume_run(run_id)
    await worker.run_until_idle()

    run = await queued_engine.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.output == {"only": 10}


async def test_templated_node_resolves_runtime_step(queued_engine, registry, graph_rpc, worker):
    meta = WorkflowMeta(
        name="dynamic",
        nodes={
            "start": GraphNode(rpc_name="echo"),
            "task-${id}": GraphNode(rpc_name="double", next="done"),
            "done": GraphNode(),
        },
        entry_node_ids=["start"],
    )
    registry.register_graph(meta)
    run_id = await queued_engine.start_workflow("dynamic", "go")

    assert await queued_engine.execute_workflow_step(run_id, "task-7", "double", 21) == 42
    await worker.run_until_idle()

    run = await queued_engine.get_run(run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.output == {"start": "go", "task-7": 42, "done": {}}


async def test_unmatched_pending_step_raises(engine, registry, in_memory_store):
    definition = registry.register_graph(
        WorkflowMeta(name="single", nodes={"a": GraphNode(rpc_name="echo")}, entry_node_ids=["a"])
    )
    run_id = await in_memory_store.create_run(
        "single", None, inline=True, graph_hash=definition.graph_hash
    )
    done = await in_memory_store.insert_step_state(run_id, "a", "echo", None)
    await in_memory_store.set_step_result(done.step_id, 1)
    await in_memory_store.insert_step_state(run_id, "ghost", "echo", None)

    with pytest.raises(GraphValidationError, match="matches no node of graph 'single'"):
        await engine.run_workflow_job(run_id)
