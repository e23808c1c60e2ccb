"""
Collaborator interfaces the engine talks to.

Design Principle: "Let functions define the behavior they require"
The engine only needs three narrow capabilities: invoke an RPC, enqueue a
job, schedule a delayed RPC. Queue and scheduler are optional; without
them the engine runs everything in-process.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pyweft.core.errors import RPCNotFoundError
from pyweft.models import Backoff

if TYPE_CHECKING:
    from pyweft.executor.wire import Wire

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobOptions:
    """Delivery options for a queued job.

    Attributes:
        attempts: Total deliveries the queue may make
        backoff: Delay policy between failed deliveries
        delay: Milliseconds to wait before the first delivery
    """

    attempts: int = 1
    backoff: Backoff | None = None
    delay: int = 0


@runtime_checkable
class RPCService(Protocol):
    async def rpc_with_wire(self, name: str, data: Any, wire: Wire | None) -> Any:
        """Execute the named function; raise RPCNotFoundError if it is unknown."""
        ...


@runtime_checkable
class QueueService(Protocol):
    async def add(
        self, queue_name: str, payload: dict[str, Any], options: JobOptions | None = None
    ) -> str:
        """Enqueue a job and return its id."""
        ...


@runtime_checkable
class SchedulerService(Protocol):
    async def schedule_rpc(self, delay_ms: int, rpc_name: str, payload: dict[str, Any]) -> None:
        """Invoke ``rpc_name`` with ``payload`` once ``delay_ms`` has elapsed."""
        ...


RPCFunction = Callable[[Any, "Wire | None"], Any]


class LocalRPCService:
    """
    RPC service backed by functions registered in this process.

    Functions take ``(data, wire)`` and may be sync or async.

    Example:
        ```python
        rpc = LocalRPCService()

        @rpc.function("chargeCard")
        async def charge_card(data, wire):
            return {"charged": data["amount"]}
        ```
    """

    def __init__(self) -> None:
        self._functions: dict[str, RPCFunction] = {}

    def __repr__(self) -> str:
        return f"LocalRPCService(functions={sorted(self._functions)})"

    def register(self, name: str, func: RPCFunction) -> None:
        self._functions[name] = func
        logger.debug(f"Registered RPC function {name}")

    def unregister(self, name: str) -> None:
        self._functions.pop(name, None)

    def function(self, name: str | None = None) -> Callable[[RPCFunction], RPCFunction]:
        """Decorator form of ``register``; defaults to the function's name."""

        def decorator(func: RPCFunction) -> RPCFunction:
            self.register(name or func.__name__, func)
            return func

        return decorator

    def has(self, name: str) -> bool:
        return name in self._functions

    async def rpc_with_wire(self, name: str, data: Any, wire: Wire | None) -> Any:
        func = self._functions.get(name)
        if func is None:
            raise RPCNotFoundError(name)
        result = func(data, wire)
        if inspect.isawaitable(result):
            result = await result
        return result
