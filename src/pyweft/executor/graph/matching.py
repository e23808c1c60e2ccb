"""Matching runtime step names against (possibly templated) node ids.

A node id such as ``task-${id}`` stands for every runtime step named
``task-<something>``. Patterns are compiled once per graph and anchored at
both ends. A name matching more than one templated id is a configuration
error, never a silent pick.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from pyweft.core.errors import AmbiguousTemplateMatchError

_PLACEHOLDER = re.compile(r"\$\{[^}]+\}")


def is_templated(node_id: str) -> bool:
    return _PLACEHOLDER.search(node_id) is not None


def compile_node_pattern(node_id: str) -> re.Pattern[str]:
    """Turn ``task-${id}`` into a regex matching ``task-123``."""
    literals = _PLACEHOLDER.split(node_id)
    return re.compile("(.+?)".join(re.escape(literal) for literal in literals))


class NodeMatcher:
    """Resolves runtime names to declared node ids."""

    def __init__(self, node_ids: Iterable[str]):
        self._exact: set[str] = set()
        self._patterns: list[tuple[str, re.Pattern[str]]] = []
        for node_id in node_ids:
            self._exact.add(node_id)
            if is_templated(node_id):
                self._patterns.append((node_id, compile_node_pattern(node_id)))

    @property
    def has_templates(self) -> bool:
        return bool(self._patterns)

    def match(self, name: str, kind: str = "node") -> str | None:
        """
        Resolve a runtime name to the node id it instantiates.

        Exact ids win; otherwise exactly one templated id must match.

        Returns:
            The declared node id, or None if nothing matches

        Raises:
            AmbiguousTemplateMatchError: If several templated ids match
        """
        if name in self._exact:
            return name
        matches = [node_id for node_id, pattern in self._patterns if pattern.fullmatch(name)]
        if not matches:
            return None
        if len(matches) > 1:
            raise AmbiguousTemplateMatchError(kind, name, matches)
        return matches[0]

    def resolve_names(self, names: Iterable[str], kind: str = "node") -> dict[str, str]:
        """Map each runtime name that matches a node to its node id."""
        resolved: dict[str, str] = {}
        for name in names:
            node_id = self.match(name, kind)
            if node_id is not None:
                resolved[name] = node_id
        return resolved
