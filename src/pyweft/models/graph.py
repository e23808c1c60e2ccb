"""Declarative workflow graph records.

A graph is a mapping from node id to ``GraphNode``. Node inputs may hold
literal values, data references (``Ref``) and string templates
(``Template``) that read other nodes' results or the trigger payload.

Example:
    ```python
    meta = WorkflowMeta(
        name="onboarding",
        nodes={
            "create": GraphNode(rpc_name="createUser", next="welcome"),
            "welcome": GraphNode(
                rpc_name="sendEmail",
                input={
                    "to": ref("create", "email"),
                    "subject": template("Welcome ", ref("trigger", "name"), "!"),
                },
            ),
        },
        entry_node_ids=["create"],
    )
    ```
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Union

from pyweft.models.retry import RetryDelay

TRIGGER = "trigger"
"""Reserved reference target for the run's input payload."""

NextConfig = Union[str, list[str], dict[str, Union[str, list[str]]]]

WorkflowSource = Literal["graph", "function"]


@dataclass(frozen=True)
class Ref:
    """Reference to another node's result (or the trigger payload)."""

    node_id: str
    path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"$ref": self.node_id}
        if self.path is not None:
            data["path"] = self.path
        return data


@dataclass(frozen=True)
class Template:
    """String interpolation over several references.

    ``parts`` always holds one more element than ``expressions``; the
    rendered string alternates between them.
    """

    parts: tuple[str, ...]
    expressions: tuple[Ref, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "$template": {
                "parts": list(self.parts),
                "expressions": [expr.to_dict() for expr in self.expressions],
            }
        }


def ref(node_id: str, path: str | None = None) -> Ref:
    """Create a data reference, e.g. ``ref("fetch", "items[0].id")``."""
    return Ref(node_id=node_id, path=path)


def template(*pieces: str | Ref) -> Template:
    """Build a template from alternating literal strings and references."""
    parts: list[str] = [""]
    expressions: list[Ref] = []
    for piece in pieces:
        if isinstance(piece, Ref):
            expressions.append(piece)
            parts.append("")
        else:
            parts[-1] += piece
    return Template(parts=tuple(parts), expressions=tuple(expressions))


@dataclass(frozen=True)
class GraphNode:
    """A unit of work within a declarative graph.

    Attributes:
        rpc_name: Function to invoke; None makes the node a pass-through
            that records its resolved input as its result
        input: Input mapping (literals, ``Ref`` and ``Template`` values);
            None passes the trigger payload to entry nodes
        next: Successor id, list of ids, or a map keyed by branch key
        on_error: Node id(s) that receive ``{"error": {"message": ...}}``
            once this node's attempts are exhausted
        retries: Retry bound, None for the engine default
        retry_delay: Retry delay, None for the engine default
    """

    rpc_name: str | None = None
    input: dict[str, Any] | None = None
    next: NextConfig | None = None
    on_error: str | list[str] | None = None
    retries: int | None = None
    retry_delay: RetryDelay | None = None

    def next_targets(self, branch_key: str | None = None) -> list[str]:
        """Resolve ``next`` into concrete successor ids.

        A keyed map only yields the targets of the recorded branch key,
        and nothing when no key was recorded.
        """
        if self.next is None:
            return []
        if isinstance(self.next, str):
            return [self.next]
        if isinstance(self.next, list):
            return list(self.next)
        if branch_key is None or branch_key not in self.next:
            return []
        target = self.next[branch_key]
        return [target] if isinstance(target, str) else list(target)

    def all_next_targets(self) -> list[str]:
        """Every id ``next`` can route to, regardless of branch."""
        if isinstance(self.next, dict):
            targets: list[str] = []
            for target in self.next.values():
                targets.extend([target] if isinstance(target, str) else target)
            return targets
        return self.next_targets()

    def error_targets(self) -> list[str]:
        if self.on_error is None:
            return []
        if isinstance(self.on_error, str):
            return [self.on_error]
        return list(self.on_error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rpc_name": self.rpc_name,
            "input": _encode_value(self.input) if self.input is not None else None,
            "next": self.next,
            "on_error": self.on_error,
            "retries": self.retries,
            "retry_delay": self.retry_delay,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GraphNode:
        raw_input = data.get("input")
        return cls(
            rpc_name=data.get("rpc_name"),
            input=_decode_value(raw_input) if raw_input is not None else None,
            next=data.get("next"),
            on_error=data.get("on_error"),
            retries=data.get("retries"),
            retry_delay=data.get("retry_delay"),
        )


@dataclass(frozen=True)
class WorkflowMeta:
    """Registered definition of a workflow.

    Imperative workflows carry ``source="function"`` and no nodes; graphs
    carry ``source="graph"``. ``graph_hash`` identifies the exact definition
    a run was started on.
    """

    name: str
    nodes: dict[str, GraphNode] = field(default_factory=dict)
    entry_node_ids: list[str] = field(default_factory=list)
    source: WorkflowSource = "graph"
    graph_hash: str | None = None
    description: str | None = None

    @property
    def is_graph(self) -> bool:
        return bool(self.nodes)

    def to_dict(self) -> dict[str, Any]:
        """Canonical plain-data form, excluding the hash itself."""
        return {
            "name": self.name,
            "source": self.source,
            "entry_node_ids": list(self.entry_node_ids),
            "nodes": {node_id: node.to_dict() for node_id, node in sorted(self.nodes.items())},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], graph_hash: str | None = None) -> WorkflowMeta:
        return cls(
            name=data["name"],
            nodes={
                node_id: GraphNode.from_dict(node)
                for node_id, node in data.get("nodes", {}).items()
            },
            entry_node_ids=list(data.get("entry_node_ids", [])),
            source=data.get("source", "graph"),
            graph_hash=graph_hash,
        )


@dataclass(frozen=True)
class WorkflowVersion:
    """A stored workflow definition, keyed by (workflow_name, graph_hash)."""

    workflow_name: str
    graph_hash: str
    graph: dict[str, Any]
    source: WorkflowSource = "graph"
    created_at: datetime = field(default_factory=datetime.now)

    def to_meta(self) -> WorkflowMeta:
        return WorkflowMeta.from_dict(self.graph, graph_hash=self.graph_hash)


@dataclass(frozen=True)
class GraphState:
    """Snapshot of a graph run, keyed by runtime step name.

    Attributes:
        completed_node_ids: Steps whose current attempt succeeded
        failed_node_ids: Steps that failed with no attempts left
        active_node_ids: Steps still pending, scheduled, running, or
            failed but awaiting redelivery
        branch_keys: Branch key recorded per step name
    """

    completed_node_ids: list[str] = field(default_factory=list)
    failed_node_ids: list[str] = field(default_factory=list)
    active_node_ids: list[str] = field(default_factory=list)
    branch_keys: dict[str, str] = field(default_factory=dict)


def _encode_value(value: Any) -> Any:
    if isinstance(value, (Ref, Template)):
        return value.to_dict()
    if isinstance(value, dict):
        return {key: _encode_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode_value(item) for item in value]
    return value


def _decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        if "$ref" in value:
            return Ref(node_id=value["$ref"], path=value.get("path"))
        if "$template" in value:
            spec = value["$template"]
            return Template(
                parts=tuple(spec["parts"]),
                expressions=tuple(_decode_value(expr) for expr in spec["expressions"]),
            )
        return {key: _decode_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_decode_value(item) for item in value]
    return value
