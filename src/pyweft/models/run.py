"""Workflow run records."""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pyweft.models.status import RunStatus


@dataclass(frozen=True)
class SerializedError:
    """Persisted form of an exception.

    Stores only plain data so every storage backend can keep it and so a
    later replay can rebuild the failure without the original exception
    object.

    Attributes:
        message: Human readable error message
        name: Exception class name
        stack: Formatted traceback, when one was available
        code: Machine readable code (e.g. ``RPC_NOT_FOUND``)
    """

    message: str
    name: str = "Error"
    stack: str | None = None
    code: str | None = None

    @classmethod
    def from_exception(cls, error: BaseException, code: str | None = None) -> SerializedError:
        """Serialize an exception, picking up its ``code`` attribute if it has one."""
        stack = None
        if error.__traceback__ is not None:
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return cls(
            message=str(error),
            name=type(error).__name__,
            stack=stack,
            code=code if code is not None else getattr(error, "code", None),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "name": self.name, "stack": self.stack, "code": self.code}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SerializedError:
        return cls(
            message=data["message"],
            name=data.get("name", "Error"),
            stack=data.get("stack"),
            code=data.get("code"),
        )


@dataclass(frozen=True)
class WorkflowRun:
    """One execution instance of a workflow or graph.

    Runs are immutable records: storage backends replace them on every
    status or state change, so a caller holding a run never sees it change
    underneath them.

    Attributes:
        id: Run identifier (UUIDv7)
        workflow_name: Registered workflow name
        status: Current lifecycle status
        input: Trigger payload the run was started with
        output: Workflow result once completed
        error: Serialized error for failed, suspended or cancelled runs
        state: Free-form run-scoped key/value memory
        inline: Whether the run executes in-process instead of via a queue
        graph_hash: Version identifier of the definition the run started on
    """

    id: str
    workflow_name: str
    status: RunStatus
    input: Any = None
    output: Any = None
    error: SerializedError | None = None
    state: dict[str, Any] = field(default_factory=dict)
    inline: bool = False
    graph_hash: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def __repr__(self) -> str:
        return (
            f"WorkflowRun(id={self.id}, workflow_name={self.workflow_name}, "
            f"status={self.status}, inline={self.inline})"
        )
