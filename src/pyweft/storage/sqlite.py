"""SQLite-backed storage implementation for pyweft.

Design Pattern: Adapter Pattern
SqliteWorkflowStore adapts a SQLite database to the WorkflowStore
interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- IMMEDIATE transactions for multi-statement writes
- pickle for payloads (inputs, outputs, results, run state)
- Run and step locks are lease rows in ``workflow_lock`` with an expiry,
  so they exclude other processes sharing the database file too
"""

from __future__ import annotations

import asyncio
import json
import pickle
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite
from uuid_extensions import uuid7

from pyweft.models import (
    EXPONENTIAL,
    GraphState,
    RunStatus,
    SerializedError,
    StepHistoryEntry,
    StepOptions,
    StepState,
    StepStatus,
    WorkflowRun,
    WorkflowVersion,
)
from pyweft.storage.base import (
    LockTimeoutError,
    StorageError,
    WorkflowStore,
    lease_heartbeat,
    run_lock_key,
    step_lock_key,
)

_STEP_COLUMNS = (
    "step_id, run_id, step_name, status, rpc_name, data, result, error, attempt_count, "
    "retries, retry_delay, created_at, updated_at, running_at, scheduled_at, "
    "succeeded_at, failed_at"
)


class SqliteWorkflowStore(WorkflowStore):
    """SQLite-backed durable storage.

    After __init__, the instance is not yet usable. Call connect() first.

    Usage:
        store = SqliteWorkflowStore("workflows.db")
        await store.connect()
        try:
            run_id = await store.create_run("order", {"id": 1})
        finally:
            await store.close()
    """

    def __init__(
        self,
        db_path: str,
        lock_timeout: float | None = None,
        lock_ttl: float = 60.0,
        lock_poll_interval: float = 0.02,
    ):
        """
        Args:
            db_path: Path to SQLite database file
            lock_timeout: Seconds to wait for a lock; None waits indefinitely
            lock_ttl: Seconds after which an unreleased lease may be taken over
            lock_poll_interval: Seconds between acquisition attempts
        """
        self.db_path = db_path
        self.lock_timeout = lock_timeout
        self.lock_ttl = lock_ttl
        self.lock_poll_interval = lock_poll_interval
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection

    @classmethod
    async def in_memory(cls, lock_timeout: float | None = None) -> SqliteWorkflowStore:
        """
        Create a connected in-memory store for tests.

        Example:
            store = await SqliteWorkflowStore.in_memory()
        """
        instance = cls(":memory:", lock_timeout=lock_timeout)
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteWorkflowStore(in-memory)"
        return f"SqliteWorkflowStore({self.db_path})"

    async def connect(self) -> None:
        """Open the connection, enable WAL and create the schema."""
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,  # Autocommit; transactions are explicit
        )

        # In-memory databases report "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()
        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")
        await self._create_schema()

    async def _create_schema(self) -> None:
        """Create tables and indexes.

        - workflow_step holds every attempt; ``is_current`` marks the latest
          attempt per (run_id, step_name)
        - INTEGER timestamps in milliseconds
        """
        conn = self._conn()
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS workflow_run (
                id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                status TEXT CHECK( status IN (
                    'running','suspended','completed','failed','cancelled'
                ) ) NOT NULL,
                input BLOB,
                output BLOB,
                error TEXT,
                state BLOB,
                inline INTEGER NOT NULL DEFAULT 0,
                graph_hash TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS workflow_step (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                step_id TEXT NOT NULL UNIQUE,
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                status TEXT CHECK( status IN (
                    'pending','scheduled','running','succeeded','failed'
                ) ) NOT NULL,
                rpc_name TEXT,
                data BLOB,
                result BLOB,
                error TEXT,
                attempt_count INTEGER NOT NULL DEFAULT 1,
                retries INTEGER NOT NULL DEFAULT 0,
                retry_delay TEXT NOT NULL DEFAULT '0',
                branch_key TEXT,
                is_current INTEGER NOT NULL DEFAULT 1,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                running_at INTEGER,
                scheduled_at INTEGER,
                succeeded_at INTEGER,
                failed_at INTEGER
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_workflow_step_current
            ON workflow_step(run_id, step_name, is_current)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS workflow_version (
                workflow_name TEXT NOT NULL,
                graph_hash TEXT NOT NULL,
                graph TEXT NOT NULL,
                source TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                PRIMARY KEY (workflow_name, graph_hash)
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS workflow_lock (
                lock_key TEXT PRIMARY KEY,
                token TEXT NOT NULL,
                expires_at INTEGER NOT NULL
            )
        """)

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    async def reset(self) -> None:
        async with self._lock:
            conn = self._conn()
            for table in ("workflow_run", "workflow_step", "workflow_version", "workflow_lock"):
                await conn.execute(f"DELETE FROM {table}")

    # ========================================================================
    # Runs
    # ========================================================================

    async def create_run(
        self,
        workflow_name: str,
        input: Any,
        inline: bool = False,
        graph_hash: str | None = None,
    ) -> str:
        run_id = str(uuid7())
        now = _now_ms()
        async with self._lock:
            await self._conn().execute(
                """
                INSERT INTO workflow_run (
                    id, workflow_name, status, input, state, inline, graph_hash,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    workflow_name,
                    RunStatus.RUNNING.value,
                    pickle.dumps(input),
                    pickle.dumps({}),
                    int(inline),
                    graph_hash,
                    now,
                    now,
                ),
            )
        return run_id

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        async with self._lock:
            cursor = await self._conn().execute(
                """
                SELECT id, workflow_name, status, input, output, error, state, inline,
                       graph_hash, created_at, updated_at
                FROM workflow_run WHERE id = ?
                """,
                (run_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        return self._row_to_run(row) if row else None

    async def get_run_history(self, run_id: str) -> list[StepHistoryEntry]:
        async with self._lock:
            cursor = await self._conn().execute(
                f"SELECT {_STEP_COLUMNS} FROM workflow_step WHERE run_id = ? ORDER BY seq",
                (run_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [StepHistoryEntry.from_state(self._row_to_step(row)) for row in rows]

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        output: Any = None,
        error: SerializedError | None = None,
    ) -> None:
        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [status.value, _now_ms()]
        if output is not None:
            assignments.append("output = ?")
            params.append(pickle.dumps(output))
        if error is not None:
            assignments.append("error = ?")
            params.append(_dump_error(error))
        elif status == RunStatus.RUNNING:
            assignments.append("error = NULL")
        params.append(run_id)

        async with self._lock:
            cursor = await self._conn().execute(
                f"UPDATE workflow_run SET {', '.join(assignments)} WHERE id = ?", params
            )
            if cursor.rowcount == 0:
                raise StorageError(f"Run not found: {run_id}")

    async def update_run_state(self, run_id: str, name: str, value: Any) -> None:
        async with self._lock:
            async with self._transaction():
                state = await self._fetch_state(run_id)
                state[name] = value
                await self._conn().execute(
                    "UPDATE workflow_run SET state = ?, updated_at = ? WHERE id = ?",
                    (pickle.dumps(state), _now_ms(), run_id),
                )

    async def get_run_state(self, run_id: str) -> dict[str, Any]:
        async with self._lock:
            return await self._fetch_state(run_id)

    async def _fetch_state(self, run_id: str) -> dict[str, Any]:
        cursor = await self._conn().execute(
            "SELECT state FROM workflow_run WHERE id = ?", (run_id,)
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            raise StorageError(f"Run not found: {run_id}")
        return pickle.loads(row[0]) if row[0] else {}

    # ========================================================================
    # Steps
    # ========================================================================

    async def insert_step_state(
        self,
        run_id: str,
        step_name: str,
        rpc_name: str | None,
        data: Any,
        options: StepOptions | None = None,
    ) -> StepState:
        options = options or StepOptions()
        state = StepState(
            step_id=str(uuid7()),
            run_id=run_id,
            step_name=step_name,
            status=StepStatus.PENDING,
            rpc_name=rpc_name,
            data=data,
            attempt_count=1,
            retries=options.retries or 0,
            retry_delay=options.retry_delay or 0,
        )
        async with self._lock:
            async with self._transaction():
                await self._insert_attempt(state)
        return state

    async def get_step_state(self, run_id: str, step_name: str) -> StepState | None:
        async with self._lock:
            cursor = await self._conn().execute(
                f"""
                SELECT {_STEP_COLUMNS} FROM workflow_step
                WHERE run_id = ? AND step_name = ? AND is_current = 1
                """,
                (run_id, step_name),
            )
            row = await cursor.fetchone()
            await cursor.close()
        return self._row_to_step(row) if row else None

    async def set_step_running(self, step_id: str) -> None:
        now = _now_ms()
        await self._update_step(
            step_id, "status = ?, running_at = ?", (StepStatus.RUNNING.value, now)
        )

    async def set_step_scheduled(self, step_id: str) -> None:
        now = _now_ms()
        await self._update_step(
            step_id, "status = ?, scheduled_at = ?", (StepStatus.SCHEDULED.value, now)
        )

    async def set_step_result(self, step_id: str, result: Any) -> None:
        await self._update_step(
            step_id,
            "status = ?, result = ?, error = NULL, succeeded_at = ?",
            (StepStatus.SUCCEEDED.value, pickle.dumps(result), _now_ms()),
        )

    async def set_step_error(self, step_id: str, error: BaseException | SerializedError) -> None:
        if isinstance(error, BaseException):
            error = SerializedError.from_exception(error)
        await self._update_step(
            step_id,
            "status = ?, error = ?, failed_at = ?",
            (StepStatus.FAILED.value, _dump_error(error), _now_ms()),
        )

    async def create_retry_attempt(self, failed_step_id: str, status: StepStatus) -> StepState:
        async with self._lock:
            async with self._transaction():
                previous = await self._fetch_step(failed_step_id)
                cursor = await self._conn().execute(
                    """
                    SELECT MAX(attempt_count) FROM workflow_step
                    WHERE run_id = ? AND step_name = ?
                    """,
                    (previous.run_id, previous.step_name),
                )
                row = await cursor.fetchone()
                await cursor.close()
                now = datetime.now()
                state = StepState(
                    step_id=str(uuid7()),
                    run_id=previous.run_id,
                    step_name=previous.step_name,
                    status=status,
                    rpc_name=previous.rpc_name,
                    data=previous.data,
                    attempt_count=(row[0] or previous.attempt_count) + 1,
                    retries=previous.retries,
                    retry_delay=previous.retry_delay,
                    running_at=now if status == StepStatus.RUNNING else None,
                    scheduled_at=now if status == StepStatus.SCHEDULED else None,
                )
                await self._insert_attempt(state)
        return state

    async def _insert_attempt(self, state: StepState) -> None:
        """Insert an attempt and make it current. Caller holds a transaction."""
        conn = self._conn()
        await conn.execute(
            "UPDATE workflow_step SET is_current = 0 WHERE run_id = ? AND step_name = ?",
            (state.run_id, state.step_name),
        )
        await conn.execute(
            f"""
            INSERT INTO workflow_step ({_STEP_COLUMNS}, is_current)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
            """,
            (
                state.step_id,
                state.run_id,
                state.step_name,
                state.status.value,
                state.rpc_name,
                pickle.dumps(state.data),
                None,
                None,
                state.attempt_count,
                state.retries,
                str(state.retry_delay),
                _to_ms(state.created_at),
                _to_ms(state.updated_at),
                _to_ms(state.running_at),
                _to_ms(state.scheduled_at),
                None,
                None,
            ),
        )

    async def _update_step(self, step_id: str, assignments: str, params: tuple) -> None:
        async with self._lock:
            cursor = await self._conn().execute(
                f"UPDATE workflow_step SET {assignments}, updated_at = ? WHERE step_id = ?",
                (*params, _now_ms(), step_id),
            )
            if cursor.rowcount == 0:
                raise StorageError(f"Step not found: {step_id}")

    async def _fetch_step(self, step_id: str) -> StepState:
        cursor = await self._conn().execute(
            f"SELECT {_STEP_COLUMNS} FROM workflow_step WHERE step_id = ?", (step_id,)
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            raise StorageError(f"Step not found: {step_id}")
        return self._row_to_step(row)

    # ========================================================================
    # Locks
    # ========================================================================

    def run_lock(self, run_id: str):
        return self._hold(run_lock_key(run_id))

    def step_lock(self, run_id: str, step_name: str):
        return self._hold(step_lock_key(run_id, step_name))

    @asynccontextmanager
    async def _hold(self, key: str) -> AsyncIterator[None]:
        token = str(uuid7())
        loop = asyncio.get_running_loop()
        deadline = None if self.lock_timeout is None else loop.time() + self.lock_timeout
        while not await self._try_acquire(key, token):
            if deadline is not None and loop.time() >= deadline:
                raise LockTimeoutError(key, self.lock_timeout or 0.0)
            await asyncio.sleep(self.lock_poll_interval)
        try:
            async with lease_heartbeat(key, lambda: self._renew(key, token), self.lock_ttl / 3):
                yield
        finally:
            async with self._lock:
                await self._conn().execute(
                    "DELETE FROM workflow_lock WHERE lock_key = ? AND token = ?", (key, token)
                )

    async def _renew(self, key: str, token: str) -> bool:
        async with self._lock:
            cursor = await self._conn().execute(
                "UPDATE workflow_lock SET expires_at = ? WHERE lock_key = ? AND token = ?",
                (_now_ms() + int(self.lock_ttl * 1000), key, token),
            )
            return cursor.rowcount == 1

    async def _try_acquire(self, key: str, token: str) -> bool:
        now = _now_ms()
        async with self._lock:
            async with self._transaction():
                conn = self._conn()
                await conn.execute(
                    "DELETE FROM workflow_lock WHERE lock_key = ? AND expires_at < ?", (key, now)
                )
                cursor = await conn.execute(
                    "INSERT OR IGNORE INTO workflow_lock (lock_key, token, expires_at) "
                    "VALUES (?, ?, ?)",
                    (key, token, now + int(self.lock_ttl * 1000)),
                )
                return cursor.rowcount == 1

    # ========================================================================
    # Graph
    # ========================================================================

    async def get_completed_graph_state(self, run_id: str) -> GraphState:
        async with self._lock:
            cursor = await self._conn().execute(
                """
                SELECT step_name, status, attempt_count, retries, branch_key
                FROM workflow_step WHERE run_id = ? AND is_current = 1 ORDER BY seq
                """,
                (run_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()

        state = GraphState()
        for step_name, status, attempt_count, retries, branch_key in rows:
            if status == StepStatus.SUCCEEDED.value:
                state.completed_node_ids.append(step_name)
                if branch_key is not None:
                    state.branch_keys[step_name] = branch_key
            elif status == StepStatus.FAILED.value and attempt_count >= retries + 1:
                state.failed_node_ids.append(step_name)
            else:
                state.active_node_ids.append(step_name)
        return state

    async def get_nodes_without_steps(self, run_id: str, node_ids: list[str]) -> list[str]:
        if not node_ids:
            return []
        existing = await self._current_step_names(run_id, node_ids)
        return [node_id for node_id in node_ids if node_id not in existing]

    async def _current_step_names(self, run_id: str, node_ids: list[str]) -> set[str]:
        placeholders = ", ".join("?" for _ in node_ids)
        async with self._lock:
            cursor = await self._conn().execute(
                f"""
                SELECT step_name FROM workflow_step
                WHERE run_id = ? AND is_current = 1 AND step_name IN ({placeholders})
                """,
                (run_id, *node_ids),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return {row[0] for row in rows}

    async def get_node_results(self, run_id: str, node_ids: list[str]) -> dict[str, Any]:
        if not node_ids:
            return {}
        placeholders = ", ".join("?" for _ in node_ids)
        async with self._lock:
            cursor = await self._conn().execute(
                f"""
                SELECT step_name, result FROM workflow_step
                WHERE run_id = ? AND is_current = 1 AND status = ?
                  AND step_name IN ({placeholders})
                """,
                (run_id, StepStatus.SUCCEEDED.value, *node_ids),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return {name: pickle.loads(result) if result is not None else None for name, result in rows}

    async def set_branch_taken(self, step_id: str, branch_key: str) -> None:
        await self._update_step(step_id, "branch_key = ?", (branch_key,))

    # ========================================================================
    # Versions
    # ========================================================================

    async def upsert_workflow_version(
        self,
        workflow_name: str,
        graph_hash: str,
        graph: dict[str, Any],
        source: str = "graph",
    ) -> None:
        async with self._lock:
            await self._conn().execute(
                """
                INSERT INTO workflow_version (workflow_name, graph_hash, graph, source, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(workflow_name, graph_hash) DO UPDATE SET
                    graph = excluded.graph, source = excluded.source
                """,
                (workflow_name, graph_hash, json.dumps(graph, default=str), source, _now_ms()),
            )

    async def get_workflow_version(
        self, workflow_name: str, graph_hash: str
    ) -> WorkflowVersion | None:
        async with self._lock:
            cursor = await self._conn().execute(
                """
                SELECT graph, source, created_at FROM workflow_version
                WHERE workflow_name = ? AND graph_hash = ?
                """,
                (workflow_name, graph_hash),
            )
            row = await cursor.fetchone()
            await cursor.close()
        if row is None:
            return None
        return WorkflowVersion(
            workflow_name=workflow_name,
            graph_hash=graph_hash,
            graph=json.loads(row[0]),
            source=row[1],
            created_at=_from_ms(row[2]) or datetime.now(),
        )

    # ========================================================================
    # Helpers
    # ========================================================================

    def _conn(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")
        return self._connection

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[None]:
        """IMMEDIATE transaction. Caller holds self._lock."""
        conn = self._conn()
        await conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            await conn.execute("ROLLBACK")
            raise
        await conn.execute("COMMIT")

    @staticmethod
    def _row_to_run(row: tuple) -> WorkflowRun:
        (
            run_id,
            workflow_name,
            status,
            input_blob,
            output_blob,
            error,
            state_blob,
            inline,
            graph_hash,
            created_at,
            updated_at,
        ) = row
        return WorkflowRun(
            id=run_id,
            workflow_name=workflow_name,
            status=RunStatus(status),
            input=pickle.loads(input_blob) if input_blob is not None else None,
            output=pickle.loads(output_blob) if output_blob is not None else None,
            error=_load_error(error),
            state=pickle.loads(state_blob) if state_blob else {},
            inline=bool(inline),
            graph_hash=graph_hash,
            created_at=_from_ms(created_at) or datetime.now(),
            updated_at=_from_ms(updated_at) or datetime.now(),
        )

    @staticmethod
    def _row_to_step(row: tuple) -> StepState:
        (
            step_id,
            run_id,
            step_name,
            status,
            rpc_name,
            data,
            result,
            error,
            attempt_count,
            retries,
            retry_delay,
            created_at,
            updated_at,
            running_at,
            scheduled_at,
            succeeded_at,
            failed_at,
        ) = row
        return StepState(
            step_id=step_id,
            run_id=run_id,
            step_name=step_name,
            status=StepStatus(status),
            rpc_name=rpc_name,
            data=pickle.loads(data) if data is not None else None,
            result=pickle.loads(result) if result is not None else None,
            error=_load_error(error),
            attempt_count=attempt_count,
            retries=retries,
            retry_delay=EXPONENTIAL if retry_delay == EXPONENTIAL else float(retry_delay),
            created_at=_from_ms(created_at) or datetime.now(),
            updated_at=_from_ms(updated_at) or datetime.now(),
            running_at=_from_ms(running_at),
            scheduled_at=_from_ms(scheduled_at),
            succeeded_at=_from_ms(succeeded_at),
            failed_at=_from_ms(failed_at),
        )


def _now_ms() -> int:
    return int(datetime.now().timestamp() * 1000)


def _to_ms(value: datetime | None) -> int | None:
    return int(value.timestamp() * 1000) if value is not None else None


def _from_ms(value: int | None) -> datetime | None:
    return datetime.fromtimestamp(value / 1000) if value is not None else None


def _dump_error(error: SerializedError) -> str:
    return json.dumps(error.to_dict())


def _load_error(raw: str | None) -> SerializedError | None:
    return SerializedError.from_dict(json.loads(raw)) if raw else None
