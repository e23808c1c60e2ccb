"""Declarative graph execution: validation, matching, inputs and continuation."""

from pyweft.executor.graph.inputs import (
    get_path,
    parse_path,
    referenced_node_ids,
    resolve_node_input,
    resolve_value,
)
from pyweft.executor.graph.matching import NodeMatcher, compile_node_pattern, is_templated
from pyweft.executor.graph.validation import validate_graph

__all__ = [
    "NodeMatcher",
    "compile_node_pattern",
    "is_templated",
    "parse_path",
    "get_path",
    "resolve_value",
    "resolve_node_input",
    "referenced_node_ids",
    "validate_graph",
]
