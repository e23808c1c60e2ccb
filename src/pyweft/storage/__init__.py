"""Storage backends for durable workflow state.

Provides multiple implementations behind a common interface:
    - WorkflowStore: Abstract interface
    - InMemoryWorkflowStore: In-memory storage for tests
    - SqliteWorkflowStore: SQLite-backed storage (aiosqlite)
    - RedisWorkflowStore: Redis-backed distributed storage

Design: Adapter Pattern + Dependency Inversion
    The engine depends on WorkflowStore only, so backends can be swapped
    without touching it.
"""

from pyweft.storage.base import LockTimeoutError, StorageError, WorkflowStore

# Backends are imported lazily so that aiosqlite and redis are only loaded
# when the corresponding store is used.


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "InMemoryWorkflowStore":
        from pyweft.storage.memory import InMemoryWorkflowStore

        return InMemoryWorkflowStore
    elif name == "RedisWorkflowStore":
        from pyweft.storage.redis import RedisWorkflowStore

        return RedisWorkflowStore
    elif name == "SqliteWorkflowStore":
        from pyweft.storage.sqlite import SqliteWorkflowStore

        return SqliteWorkflowStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "WorkflowStore",
    "StorageError",
    "LockTimeoutError",
    "InMemoryWorkflowStore",
    "SqliteWorkflowStore",
    "RedisWorkflowStore",
]
