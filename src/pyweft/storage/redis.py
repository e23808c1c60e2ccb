"""Redis-based storage implementation.

Lets orchestrators and step workers on separate machines share runs,
step attempts and locks through one Redis server.

Data Structures:
- weft:run:{run_id} (HASH): Run fields
- weft:run:{run_id}:state (HASH): Run-scoped state, one field per key
- weft:run:{run_id}:steps (LIST): Step attempt ids in creation order
- weft:run:{run_id}:current (HASH): step_name -> id of the current attempt
- weft:step:{step_id} (HASH): Step attempt fields
- weft:version:{workflow_name}:{graph_hash} (HASH): Stored definition
- weft:lock:{key} (STRING): Lock token with a PX expiry

Key Features:
- Atomic operations: Uses MULTI/EXEC pipelines for multi-key writes
- Locks: SET NX PX to acquire, compare-and-delete script to release
- Connection pooling: redis-py connection pool for concurrent access

Design: Adapter Pattern
Implements WorkflowStore for Redis.
"""

from __future__ import annotations

import asyncio
import json
import pickle
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import redis.asyncio as redis
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

# Delete the lock only if we still own it
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# Extend the lock only if we still own it
_RENEW_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


class RedisWorkflowStore(WorkflowStore):
    """Redis workflow store using connection pooling.

    Usage:
        store = RedisWorkflowStore("redis://localhost:6379")
        await store.connect()

        run_id = await store.create_run("order", {"id": 1})
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        max_connections: int = 16,
        lock_timeout: float | None = None,
        lock_ttl_ms: int = 60_000,
        lock_poll_interval: float = 0.02,
    ):
        """
        Args:
            redis_url: Redis connection URL
            max_connections: Maximum pool size
            lock_timeout: Seconds to wait for a lock; None waits indefinitely
            lock_ttl_ms: Expiry of a held lock, in milliseconds
            lock_poll_interval: Seconds between acquisition attempts
        """
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._redis: redis.Redis | None = None
        self.lock_timeout = lock_timeout
        self.lock_ttl_ms = lock_ttl_ms
        self.lock_poll_interval = lock_poll_interval

    def __repr__(self) -> str:
        return f"RedisWorkflowStore({self._redis_url})"

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=False,  # Payloads are pickled bytes
            max_connections=self._max_connections,
        )

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def reset(self) -> None:
        """Delete every key written by this store."""
        conn = self._conn()
        keys = [key async for key in conn.scan_iter(match="weft:*")]
        if keys:
            await conn.delete(*keys)

    def _conn(self) -> redis.Redis:
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")
        return self._redis

    @staticmethod
    def _run_key(run_id: str) -> str:
        return f"weft:run:{run_id}"

    @staticmethod
    def _state_key(run_id: str) -> str:
        return f"weft:run:{run_id}:state"

    @staticmethod
    def _steps_key(run_id: str) -> str:
        return f"weft:run:{run_id}:steps"

    @staticmethod
    def _current_key(run_id: str) -> str:
        return f"weft:run:{run_id}:current"

    @staticmethod
    def _step_key(step_id: str) -> str:
        return f"weft:step:{step_id}"

    @staticmethod
    def _version_key(workflow_name: str, graph_hash: str) -> str:
        return f"weft:version:{workflow_name}:{graph_hash}"

    @staticmethod
    def _lock_key(key: str) -> str:
        return f"weft:lock:{key}"

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
        conn = self._conn()
        run_id = str(uuid7())
        now = _now_ms()
        fields: dict[str, Any] = {
            "id": run_id,
            "workflow_name": workflow_name,
            "status": RunStatus.RUNNING.value,
            "input": pickle.dumps(input),
            "inline": "1" if inline else "0",
            "created_at": now,
            "updated_at": now,
        }
        if graph_hash is not None:
            fields["graph_hash"] = graph_hash
        await conn.hset(self._run_key(run_id), mapping=fields)
        return run_id

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        conn = self._conn()
        async with conn.pipeline(transaction=True) as pipe:
            pipe.hgetall(self._run_key(run_id))
            pipe.hgetall(self._state_key(run_id))
            data, state = await pipe.execute()
        if not data:
            return None
        return WorkflowRun(
            id=data[b"id"].decode(),
            workflow_name=data[b"workflow_name"].decode(),
            status=RunStatus(data[b"status"].decode()),
            input=_load_blob(data.get(b"input")),
            output=_load_blob(data.get(b"output")),
            error=_load_error(data.get(b"error")),
            state={name.decode(): pickle.loads(value) for name, value in state.items()},
            inline=data.get(b"inline") == b"1",
            graph_hash=data[b"graph_hash"].decode() if b"graph_hash" in data else None,
            created_at=_from_ms(data.get(b"created_at")) or datetime.now(),
            updated_at=_from_ms(data.get(b"updated_at")) or datetime.now(),
        )

    async def get_run_history(self, run_id: str) -> list[StepHistoryEntry]:
        steps = await self._steps_in_order(run_id)
        return [StepHistoryEntry.from_state(step) for step in steps]

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        output: Any = None,
        error: SerializedError | None = None,
    ) -> None:
        conn = self._conn()
        key = self._run_key(run_id)
        if not await conn.exists(key):
            raise StorageError(f"Run not found: {run_id}")

        fields: dict[str, Any] = {"status": status.value, "updated_at": _now_ms()}
        if output is not None:
            fields["output"] = pickle.dumps(output)
        if error is not None:
            fields["error"] = _dump_error(error)

        async with conn.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping=fields)
            if error is None and status == RunStatus.RUNNING:
                pipe.hdel(key, "error")
            await pipe.execute()

    async def update_run_state(self, run_id: str, name: str, value: Any) -> None:
        conn = self._conn()
        if not await conn.exists(self._run_key(run_id)):
            raise StorageError(f"Run not found: {run_id}")
        async with conn.pipeline(transaction=True) as pipe:
            pipe.hset(self._state_key(run_id), name, pickle.dumps(value))
            pipe.hset(self._run_key(run_id), "updated_at", _now_ms())
            await pipe.execute()

    async def get_run_state(self, run_id: str) -> dict[str, Any]:
        conn = self._conn()
        if not await conn.exists(self._run_key(run_id)):
            raise StorageError(f"Run not found: {run_id}")
        state = await conn.hgetall(self._state_key(run_id))
        return {name.decode(): pickle.loads(value) for name, value in state.items()}

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
        await self._insert_attempt(state)
        return state

    async def get_step_state(self, run_id: str, step_name: str) -> StepState | None:
        conn = self._conn()
        step_id = await conn.hget(self._current_key(run_id), step_name)
        if step_id is None:
            return None
        return await self._fetch_step(step_id.decode())

    async def set_step_running(self, step_id: str) -> None:
        await self._update_step(
            step_id, {"status": StepStatus.RUNNING.value, "running_at": _now_ms()}
        )

    async def set_step_scheduled(self, step_id: str) -> None:
        await self._update_step(
            step_id, {"status": StepStatus.SCHEDULED.value, "scheduled_at": _now_ms()}
        )

    async def set_step_result(self, step_id: str, result: Any) -> None:
        await self._update_step(
            step_id,
            {
                "status": StepStatus.SUCCEEDED.value,
                "result": pickle.dumps(result),
                "succeeded_at": _now_ms(),
            },
            clear=("error",),
        )

    async def set_step_error(self, step_id: str, error: BaseException | SerializedError) -> None:
        if isinstance(error, BaseException):
            error = SerializedError.from_exception(error)
        await self._update_step(
            step_id,
            {
                "status": StepStatus.FAILED.value,
                "error": _dump_error(error),
                "failed_at": _now_ms(),
            },
        )

    async def create_retry_attempt(self, failed_step_id: str, status: StepStatus) -> StepState:
        previous = await self._fetch_step(failed_step_id)
        now = datetime.now()
        state = StepState(
            step_id=str(uuid7()),
            run_id=previous.run_id,
            step_name=previous.step_name,
            status=status,
            rpc_name=previous.rpc_name,
            data=previous.data,
            attempt_count=previous.attempt_count + 1,
            retries=previous.retries,
            retry_delay=previous.retry_delay,
            running_at=now if status == StepStatus.RUNNING else None,
            scheduled_at=now if status == StepStatus.SCHEDULED else None,
        )
        await self._insert_attempt(state)
        return state

    async def _insert_attempt(self, state: StepState) -> None:
        conn = self._conn()
        fields: dict[str, Any] = {
            "step_id": state.step_id,
            "run_id": state.run_id,
            "step_name": state.step_name,
            "status": state.status.value,
            "data": pickle.dumps(state.data),
            "attempt_count": state.attempt_count,
            "retries": state.retries,
            "retry_delay": str(state.retry_delay),
            "created_at": _to_ms(state.created_at),
            "updated_at": _to_ms(state.updated_at),
        }
        if state.rpc_name is not None:
            fields["rpc_name"] = state.rpc_name
        if state.running_at is not None:
            fields["running_at"] = _to_ms(state.running_at)
        if state.scheduled_at is not None:
            fields["scheduled_at"] = _to_ms(state.scheduled_at)

        async with conn.pipeline(transaction=True) as pipe:
            pipe.hset(self._step_key(state.step_id), mapping=fields)
            pipe.rpush(self._steps_key(state.run_id), state.step_id)
            pipe.hset(self._current_key(state.run_id), state.step_name, state.step_id)
            await pipe.execute()

    async def _update_step(
        self, step_id: str, fields: dict[str, Any], clear: tuple[str, ...] = ()
    ) -> None:
        conn = self._conn()
        key = self._step_key(step_id)
        if not await conn.exists(key):
            raise StorageError(f"Step not found: {step_id}")
        async with conn.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping={**fields, "updated_at": _now_ms()})
            if clear:
                pipe.hdel(key, *clear)
            await pipe.execute()

    async def _fetch_step(self, step_id: str) -> StepState:
        data = await self._conn().hgetall(self._step_key(step_id))
        if not data:
            raise StorageError(f"Step not found: {step_id}")
        return _decode_step(data)

    async def _steps_in_order(self, run_id: str, current_only: bool = False) -> list[StepState]:
        conn = self._conn()
        step_ids = await conn.lrange(self._steps_key(run_id), 0, -1)
        if current_only:
            current = set((await conn.hgetall(self._current_key(run_id))).values())
            step_ids = [step_id for step_id in step_ids if step_id in current]
        if not step_ids:
            return []
        async with conn.pipeline(transaction=False) as pipe:
            for step_id in step_ids:
                pipe.hgetall(self._step_key(step_id.decode()))
            rows = await pipe.execute()
        return [_decode_step(row) for row in rows if row]

    # ========================================================================
    # Locks
    # ========================================================================

    def run_lock(self, run_id: str):
        return self._hold(run_lock_key(run_id))

    def step_lock(self, run_id: str, step_name: str):
        return self._hold(step_lock_key(run_id, step_name))

    @asynccontextmanager
    async def _hold(self, key: str) -> AsyncIterator[None]:
        conn = self._conn()
        redis_key = self._lock_key(key)
        token = str(uuid7())
        loop = asyncio.get_running_loop()
        deadline = None if self.lock_timeout is None else loop.time() + self.lock_timeout
        while not await conn.set(redis_key, token, nx=True, px=self.lock_ttl_ms):
            if deadline is not None and loop.time() >= deadline:
                raise LockTimeoutError(key, self.lock_timeout or 0.0)
            await asyncio.sleep(self.lock_poll_interval)
        try:
            async with lease_heartbeat(
                key, lambda: self._renew(redis_key, token), self.lock_ttl_ms / 3000
            ):
                yield
        finally:
            await conn.eval(_RELEASE_SCRIPT, 1, redis_key, token)

    async def _renew(self, redis_key: str, token: str) -> bool:
        renewed = await self._conn().eval(_RENEW_SCRIPT, 1, redis_key, token, self.lock_ttl_ms)
        return bool(renewed)

    # ========================================================================
    # Graph
    # ========================================================================

    async def get_completed_graph_state(self, run_id: str) -> GraphState:
        state = GraphState()
        for step in await self._steps_in_order(run_id, current_only=True):
            if step.status == StepStatus.SUCCEEDED:
                state.completed_node_ids.append(step.step_name)
            elif step.status == StepStatus.FAILED and step.retries_exhausted:
                state.failed_node_ids.append(step.step_name)
            else:
                state.active_node_ids.append(step.step_name)

        branch_keys = await self._branch_keys(run_id, state.completed_node_ids)
        state.branch_keys.update(branch_keys)
        return state

    async def _branch_keys(self, run_id: str, step_names: list[str]) -> dict[str, str]:
        if not step_names:
            return {}
        conn = self._conn()
        step_ids = await conn.hmget(self._current_key(run_id), step_names)
        async with conn.pipeline(transaction=False) as pipe:
            for step_id in step_ids:
                pipe.hget(self._step_key(step_id.decode()), "branch_key")
            keys = await pipe.execute()
        return {
            name: key.decode()
            for name, key in zip(step_names, keys, strict=True)
            if key is not None
        }

    async def get_nodes_without_steps(self, run_id: str, node_ids: list[str]) -> list[str]:
        if not node_ids:
            return []
        step_ids = await self._conn().hmget(self._current_key(run_id), node_ids)
        return [
            node_id for node_id, step_id in zip(node_ids, step_ids, strict=True) if step_id is None
        ]

    async def get_node_results(self, run_id: str, node_ids: list[str]) -> dict[str, Any]:
        if not node_ids:
            return {}
        conn = self._conn()
        step_ids = await conn.hmget(self._current_key(run_id), node_ids)
        present = [
            (node_id, step_id.decode())
            for node_id, step_id in zip(node_ids, step_ids, strict=True)
            if step_id is not None
        ]
        if not present:
            return {}
        async with conn.pipeline(transaction=False) as pipe:
            for _, step_id in present:
                pipe.hmget(self._step_key(step_id), ["status", "result"])
            rows = await pipe.execute()

        results: dict[str, Any] = {}
        for (node_id, _), (status, result) in zip(present, rows, strict=True):
            if status is not None and status.decode() == StepStatus.SUCCEEDED.value:
                results[node_id] = _load_blob(result)
        return results

    async def set_branch_taken(self, step_id: str, branch_key: str) -> None:
        await self._update_step(step_id, {"branch_key": branch_key})

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
        conn = self._conn()
        key = self._version_key(workflow_name, graph_hash)
        async with conn.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping={"graph": json.dumps(graph, default=str), "source": source})
            pipe.hsetnx(key, "created_at", _now_ms())
            await pipe.execute()

    async def get_workflow_version(
        self, workflow_name: str, graph_hash: str
    ) -> WorkflowVersion | None:
        data = await self._conn().hgetall(self._version_key(workflow_name, graph_hash))
        if not data:
            return None
        return WorkflowVersion(
            workflow_name=workflow_name,
            graph_hash=graph_hash,
            graph=json.loads(data[b"graph"]),
            source=data[b"source"].decode(),
            created_at=_from_ms(data.get(b"created_at")) or datetime.now(),
        )


def _decode_step(data: dict[bytes, bytes]) -> StepState:
    def text(name: str) -> str | None:
        value = data.get(name.encode())
        return value.decode() if value is not None else None

    retry_delay = text("retry_delay") or "0"
    return StepState(
        step_id=text("step_id") or "",
        run_id=text("run_id") or "",
        step_name=text("step_name") or "",
        status=StepStatus(text("status")),
        rpc_name=text("rpc_name"),
        data=_load_blob(data.get(b"data")),
        result=_load_blob(data.get(b"result")),
        error=_load_error(data.get(b"error")),
        attempt_count=int(text("attempt_count") or 1),
        retries=int(text("retries") or 0),
        retry_delay=EXPONENTIAL if retry_delay == EXPONENTIAL else float(retry_delay),
        created_at=_from_ms(data.get(b"created_at")) or datetime.now(),
        updated_at=_from_ms(data.get(b"updated_at")) or datetime.now(),
        running_at=_from_ms(data.get(b"running_at")),
        scheduled_at=_from_ms(data.get(b"scheduled_at")),
        succeeded_at=_from_ms(data.get(b"succeeded_at")),
        failed_at=_from_ms(data.get(b"failed_at")),
    )


def _now_ms() -> int:
    return int(datetime.now().timestamp() * 1000)


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_ms(value: bytes | int | None) -> datetime | None:
    return datetime.fromtimestamp(int(value) / 1000) if value is not None else None


def _load_blob(value: bytes | None) -> Any:
    return pickle.loads(value) if value is not None else None


def _dump_error(error: SerializedError) -> str:
    return json.dumps(error.to_dict())


def _load_error(raw: bytes | str | None) -> SerializedError | None:
    return SerializedError.from_dict(json.loads(raw)) if raw else None
