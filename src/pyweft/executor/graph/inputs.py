"""Resolving node inputs against upstream results.

Inputs may contain ``Ref`` values (a node id plus an optional path such as
``items[0].id``) and ``Template`` values that interpolate several refs into
one string. The results map always includes ``trigger``, the run's input.
"""

from __future__ import annotations

import re
from typing import Any

from pyweft.models import TRIGGER, GraphNode, Ref, Template

_SEGMENT = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


def parse_path(path: str) -> list[str | int]:
    """Split ``a.b[0].c`` into ``["a", "b", 0, "c"]``."""
    segments: list[str | int] = []
    for key, index in _SEGMENT.findall(path):
        segments.append(int(index) if index else key)
    return segments


def get_path(value: Any, path: str | None) -> Any:
    """Walk ``path`` into ``value``; a missing segment yields None."""
    if not path:
        return value
    current = value
    for segment in parse_path(path):
        if current is None:
            return None
        if isinstance(segment, int):
            if not isinstance(current, (list, tuple)) or segment >= len(current):
                return None
            current = current[segment]
        elif isinstance(current, dict):
            current = current.get(segment)
        else:
            current = getattr(current, segment, None)
    return current


def resolve_value(value: Any, results: dict[str, Any]) -> Any:
    if isinstance(value, Ref):
        return get_path(results.get(value.node_id), value.path)
    if isinstance(value, Template):
        rendered = [value.parts[0]]
        for expression, part in zip(value.expressions, value.parts[1:]):
            resolved = resolve_value(expression, results)
            rendered.append("" if resolved is None else str(resolved))
            rendered.append(part)
        return "".join(rendered)
    if isinstance(value, dict):
        return {key: resolve_value(item, results) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, results) for item in value]
    return value


def resolve_node_input(node: GraphNode, results: dict[str, Any], is_entry: bool) -> Any:
    """Build the payload a node is invoked with.

    A node without an input mapping receives the trigger payload if it is
    an entry node and an empty dict otherwise.
    """
    if node.input is None:
        return results.get(TRIGGER) if is_entry else {}
    return resolve_value(node.input, results)


def referenced_node_ids(value: Any) -> set[str]:
    """Every node id read by refs inside ``value``, excluding ``trigger``."""
    found: set[str] = set()
    if isinstance(value, Ref):
        if value.node_id != TRIGGER:
            found.add(value.node_id)
    elif isinstance(value, Template):
        for expression in value.expressions:
            found |= referenced_node_ids(expression)
    elif isinstance(value, dict):
        for item in value.values():
            found |= referenced_node_ids(item)
    elif isinstance(value, list):
        for item in value:
            found |= referenced_node_ids(item)
    return found
