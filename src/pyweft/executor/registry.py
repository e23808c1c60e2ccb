"""
Workflow registry.

Maps workflow names to their definitions: an imperative function, a
declarative graph, or both (a function whose graph form is stored for
version fallback). Hashes are computed at registration when not given.

Example:
    ```python
    registry = WorkflowRegistry()

    @registry.workflow("order")
    async def order(data, workflow):
        charge = await workflow.do("charge", "chargeCard", {"amount": data["amount"]})
        return charge

    registry.register_graph(onboarding_meta)
    ```
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from pyweft.core.errors import MissingGraphMetadataError, WorkflowNotFoundError
from pyweft.core.hashing import hash_function, hash_graph
from pyweft.executor.graph.validation import validate_graph
from pyweft.models import WorkflowMeta

if TYPE_CHECKING:
    from pyweft.executor.wire import WorkflowWire

logger = logging.getLogger(__name__)

WorkflowFunction = Callable[[Any, "WorkflowWire"], Awaitable[Any]]


@dataclass(frozen=True)
class WorkflowDefinition:
    """A registered workflow."""

    name: str
    meta: WorkflowMeta
    func: WorkflowFunction | None = None

    @property
    def graph_hash(self) -> str:
        if self.meta.graph_hash is None:
            raise MissingGraphMetadataError(f"Missing graph hash for workflow '{self.name}'")
        return self.meta.graph_hash

    @property
    def is_graph(self) -> bool:
        return self.func is None and self.meta.is_graph


class WorkflowRegistry:
    """Registry of workflow definitions by name."""

    def __init__(self) -> None:
        self._definitions: dict[str, WorkflowDefinition] = {}

    def __repr__(self) -> str:
        return f"WorkflowRegistry(workflows={sorted(self._definitions)})"

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def register(
        self,
        name: str,
        func: WorkflowFunction,
        graph_hash: str | None = None,
        description: str | None = None,
    ) -> WorkflowDefinition:
        """Register an imperative workflow function."""
        meta = WorkflowMeta(
            name=name,
            source="function",
            graph_hash=graph_hash or hash_function(name, func),
            description=description,
        )
        definition = WorkflowDefinition(name=name, meta=meta, func=func)
        self._definitions[name] = definition
        logger.debug(f"Registered workflow {name} (function, hash={meta.graph_hash})")
        return definition

    def register_graph(self, meta: WorkflowMeta) -> WorkflowDefinition:
        """
        Register a declarative graph.

        The graph is validated immediately.

        Raises:
            GraphValidationError: If the graph has dangling references
        """
        validate_graph(meta)
        if meta.graph_hash is None:
            meta = replace(meta, graph_hash=hash_graph(meta))
        definition = WorkflowDefinition(name=meta.name, meta=meta)
        self._definitions[meta.name] = definition
        logger.debug(
            f"Registered workflow {meta.name} "
            f"(graph, {len(meta.nodes)} nodes, hash={meta.graph_hash})"
        )
        return definition

    def workflow(
        self, name: str | None = None, description: str | None = None
    ) -> Callable[[WorkflowFunction], WorkflowFunction]:
        """Decorator form of ``register``."""

        def decorator(func: WorkflowFunction) -> WorkflowFunction:
            self.register(name or func.__name__, func, description=description)
            return func

        return decorator

    def get(self, name: str) -> WorkflowDefinition:
        """
        Raises:
            WorkflowNotFoundError: If ``name`` is not registered
        """
        definition = self._definitions.get(name)
        if definition is None:
            raise WorkflowNotFoundError(name)
        return definition

    def definitions(self) -> list[WorkflowDefinition]:
        return list(self._definitions.values())
