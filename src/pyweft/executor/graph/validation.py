"""Eager graph validation.

Runs before any execution: every entry node, ``next`` and ``on_error``
target, and every input reference must resolve to a declared node.
"""

from __future__ import annotations

from collections.abc import Iterable

from pyweft.core.errors import GraphValidationError, MissingGraphMetadataError
from pyweft.executor.graph.inputs import referenced_node_ids
from pyweft.executor.graph.matching import NodeMatcher
from pyweft.models import WorkflowMeta


def validate_graph(meta: WorkflowMeta, step_names: Iterable[str] = ()) -> NodeMatcher:
    """
    Validate a graph definition.

    Args:
        meta: The graph
        step_names: Runtime step names already recorded for a run; each
            must resolve to at most one templated node

    Returns:
        A matcher for the graph's node ids

    Raises:
        MissingGraphMetadataError: If the workflow has no nodes
        GraphValidationError: On any unknown or ambiguous reference
    """
    if not meta.nodes:
        raise MissingGraphMetadataError(f"Workflow '{meta.name}' has no graph nodes")
    if not meta.entry_node_ids:
        raise GraphValidationError(f"Workflow '{meta.name}' has no entry nodes")

    matcher = NodeMatcher(meta.nodes)

    for entry_id in meta.entry_node_ids:
        if entry_id not in meta.nodes:
            raise GraphValidationError(
                f"Workflow '{meta.name}' entry node '{entry_id}' is not declared"
            )

    for node_id, node in meta.nodes.items():
        for target in node.all_next_targets():
            if matcher.match(target) is None:
                raise GraphValidationError(f"Node '{node_id}' routes to unknown node '{target}'")
        for target in node.error_targets():
            if matcher.match(target) is None:
                raise GraphValidationError(
                    f"Node '{node_id}' routes errors to unknown node '{target}'"
                )
        for target in sorted(referenced_node_ids(node.input)):
            if matcher.match(target) is None:
                raise GraphValidationError(
                    f"Node '{node_id}' references unknown node '{target}' in input"
                )

    for name in step_names:
        matcher.match(name)

    return matcher
