"""Tests for graph validation, node matching and input resolution."""

import pytest

from pyweft import AmbiguousTemplateMatchError, GraphValidationError, MissingGraphMetadataError
from pyweft.core.hashing import hash_graph
from pyweft.executor.graph import (
    NodeMatcher,
    compile_node_pattern,
    get_path,
    is_templated,
    referenced_node_ids,
    resolve_node_input,
    resolve_value,
    validate_graph,
)
from pyweft.models import GraphNode, WorkflowMeta, ref, template

# ==============================================================================
# Validation
# ==============================================================================


def test_valid_graph_returns_matcher():
    meta = WorkflowMeta(
        name="ok",
        nodes={
            "a": GraphNode(rpc_name="echo", next={"yes": "b", "no": ["c"]}, on_error="c"),
            "b": GraphNode(rpc_name="echo", input={"v": ref("a", "value")}),
            "c": GraphNode(),
        },
        entry_node_ids=["a"],
    )
    matcher = validate_graph(meta)
    assert matcher.match("b") == "b"


def test_unknown_next_target():
    meta = WorkflowMeta(
        name="bad", nodes={"a": GraphNode(rpc_name="echo", next="x")}, entry_node_ids=["a"]
    )
    with pytest.raises(GraphValidationError, match="Node 'a' routes to unknown node 'x'"):
        validate_graph(meta)


def test_unknown_error_target():
    meta = WorkflowMeta(
        name="bad", nodes={"a": GraphNode(rpc_name="echo", on_error="x")}, entry_node_ids=["a"]
    )
    with pytest.raises(GraphValidationError, match="routes errors to unknown node 'x'"):
        validate_graph(meta)


def test_unknown_input_reference():
    meta = WorkflowMeta(
        name="bad",
        nodes={"a": GraphNode(rpc_name="echo", input={"v": template("id=", ref("x", "id"))})},
        entry_node_ids=["a"],
    )
    with pytest.raises(GraphValidationError, match="references unknown node 'x' in input"):
        validate_graph(meta)


def test_trigger_reference_is_always_known():
    meta = WorkflowMeta(
        name="ok",
        nodes={"a": GraphNode(rpc_name="echo", input={"v": ref("trigger", "id")})},
        entry_node_ids=["a"],
    )
    validate_graph(meta)


def test_graph_without_nodes_or_entries():
    with pytest.raises(MissingGraphMetadataError):
        validate_graph(WorkflowMeta(name="empty"))
    with pytest.raises(GraphValidationError, match="Workflow 'n' has no entry nodes"):
        validate_graph(WorkflowMeta(name="n", nodes={"a": GraphNode()}))


def test_templated_targets_validate():
    meta = WorkflowMeta(
        name="fan",
        nodes={
            "start": GraphNode(rpc_name="echo", next="task-${id}"),
            "task-${id}": GraphNode(rpc_name="echo"),
        },
        entry_node_ids=["start"],
    )
    validate_graph(meta, step_names=["start", "task-1", "task-2"])


# ==============================================================================
# Template matching
# ==============================================================================


def test_compile_node_pattern():
    assert is_templated("task-${id}")
    assert not is_templated("task")
    pattern = compile_node_pattern("task-${id}.${part}")
    assert pattern.fullmatch("task-7.a")
    assert not pattern.fullmatch("task-7")
    assert not pattern.fullmatch("xtask-7.a")


def test_exact_match_wins_over_template():
    matcher = NodeMatcher(["task-main", "task-${id}"])
    assert matcher.match("task-main") == "task-main"
    assert matcher.match("task-9") == "task-${id}"
    assert matcher.match("other") is None


def test_ambiguous_template_match():
    matcher = NodeMatcher(["a-${x}", "${y}-b"])
    expected = "ambiguous template node match for 'a-b'"
    with pytest.raises(AmbiguousTemplateMatchError, match=expected):
        matcher.match("a-b")
    with pytest.raises(AmbiguousTemplateMatchError, match="branch key match"):
        matcher.resolve_names(["a-b"], kind="branch key")


def test_ambiguous_recorded_step_fails_validation():
    meta = WorkflowMeta(
        name="amb",
        nodes={"start": GraphNode(), "a-${x}": GraphNode(), "${y}-b": GraphNode()},
        entry_node_ids=["start"],
    )
    with pytest.raises(GraphValidationError):
        validate_graph(meta, step_names=["a-b"])


# ==============================================================================
# Input resolution
# ==============================================================================


def test_get_path():
    value = {"items": [{"id": 3}, {"id": 4}], "user": {"name": "ada"}}
    assert get_path(value, "items[1].id") == 4
    assert get_path(value, "user.name") == "ada"
    assert get_path(value, None) is value
    assert get_path(value, "items[5].id") is None
    assert get_path(value, "missing.deeper") is None


def test_resolve_value_nested():
    results = {"trigger": {"id": 7}, "fetch": {"name": "ada", "tags": ["x", "y"]}}
    value = {
        "who": ref("fetch", "name"),
        "first_tag": ref("fetch", "tags[0]"),
        "label": template("user ", ref("trigger", "id"), " is ", ref("fetch", "name")),
        "list": [ref("trigger"), 1],
        "literal": "plain",
    }
    assert resolve_value(value, results) == {
        "who": "ada",
        "first_tag": "x",
        "label": "user 7 is ada",
        "list": [{"id": 7}, 1],
        "literal": "plain",
    }


def test_template_renders_missing_as_empty():
    assert resolve_value(template("[", ref("gone", "x"), "]"), {}) == "[]"


def test_node_without_input():
    results = {"trigger": {"id": 1}}
    assert resolve_node_input(GraphNode(rpc_name="echo"), results, is_entry=True) == {"id": 1}
    assert resolve_node_input(GraphNode(rpc_name="echo"), results, is_entry=False) == {}


def test_referenced_node_ids_excludes_trigger():
    value = {"a": ref("fetch"), "b": template("x", ref("trigger", "id"), ref("score"))}
    assert referenced_node_ids(value) == {"fetch", "score"}


# ==============================================================================
# Serialization and hashing
# ==============================================================================


def test_meta_dict_round_trip_preserves_hash():
    meta = WorkflowMeta(
        name="g",
        nodes={
            "a": GraphNode(rpc_name="echo", next={"yes": "b"}),
            "b": GraphNode(rpc_name="echo", input={"t": template("hi ", ref("a", "name"))}),
        },
        entry_node_ids=["a"],
    )
    restored = WorkflowMeta.from_dict(meta.to_dict())
    assert restored.nodes == meta.nodes
    assert hash_graph(restored) == hash_graph(meta)


def test_hash_changes_with_definition():
    base = WorkflowMeta(name="g", nodes={"a": GraphNode(rpc_name="echo")}, entry_node_ids=["a"])
    changed = WorkflowMeta(name="g", nodes={"a": GraphNode(rpc_name="other")}, entry_node_ids=["a"])
    assert hash_graph(base) != hash_graph(changed)
