"""
In-memory queue and scheduler service.

Implements both ``QueueService`` and ``SchedulerService`` for single-process
deployments and tests. Jobs are held in a heap ordered by the time they
become deliverable; ``Worker`` drains it.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from uuid_extensions import uuid7

from pyweft.executor.services import JobOptions

logger = logging.getLogger(__name__)

SCHEDULED_RPC_QUEUE = "weft-scheduled-rpc"
"""Internal queue carrying ``schedule_rpc`` callbacks."""


@dataclass(frozen=True)
class Job:
    """A queued unit of work.

    Attributes:
        id: Job identifier (UUIDv7)
        queue_name: Queue the job was added to
        payload: Job data
        options: Delivery options (attempts, backoff, initial delay)
        attempts_made: Failed deliveries so far
    """

    id: str
    queue_name: str
    payload: dict[str, Any]
    options: JobOptions = field(default_factory=JobOptions)
    attempts_made: int = 0

    @property
    def attempts_left(self) -> int:
        return self.options.attempts - self.attempts_made


class InMemoryQueueService:
    """Delay-aware in-memory queue.

    Usage:
        queue = InMemoryQueueService()
        engine = WorkflowEngine(store, registry, rpc).with_queue(queue).with_scheduler(queue)
        worker = Worker(engine, queue)
        await worker.run_until_idle()
    """

    def __init__(self) -> None:
        self._heap: list[tuple[float, int, Job]] = []
        self._sequence = itertools.count()
        self._notify = asyncio.Event()
        self.dead_letters: list[Job] = []

    def __repr__(self) -> str:
        return f"InMemoryQueueService(pending={len(self._heap)}, dead={len(self.dead_letters)})"

    def __len__(self) -> int:
        return len(self._heap)

    def work_notify(self) -> asyncio.Event:
        """Event set whenever a job is added."""
        return self._notify

    async def add(
        self, queue_name: str, payload: dict[str, Any], options: JobOptions | None = None
    ) -> str:
        job = Job(
            id=str(uuid7()), queue_name=queue_name, payload=payload, options=options or JobOptions()
        )
        self._push(job, job.options.delay)
        logger.debug(f"Queued job {job.id} on {queue_name} (delay={job.options.delay}ms)")
        return job.id

    async def schedule_rpc(self, delay_ms: int, rpc_name: str, payload: dict[str, Any]) -> None:
        await self.add(
            SCHEDULED_RPC_QUEUE, {"rpc_name": rpc_name, "data": payload}, JobOptions(delay=delay_ms)
        )

    def requeue(self, job: Job, delay_ms: int) -> None:
        """Put a job back after a failed delivery."""
        self._push(job, delay_ms)

    def take_ready(self) -> Job | None:
        """Pop the next deliverable job, or None if none is due yet."""
        if not self._heap or self._heap[0][0] > time.monotonic():
            return None
        return heapq.heappop(self._heap)[2]

    def next_ready_in(self) -> float | None:
        """Seconds until the next job is due; None if the queue is empty."""
        if not self._heap:
            return None
        return max(self._heap[0][0] - time.monotonic(), 0.0)

    def pending(self, queue_name: str | None = None) -> list[Job]:
        """Queued jobs in delivery order, optionally for one queue."""
        jobs = [job for _, _, job in sorted(self._heap)]
        if queue_name is None:
            return jobs
        return [job for job in jobs if job.queue_name == queue_name]

    def clear(self) -> None:
        self._heap.clear()
        self.dead_letters.clear()

    def _push(self, job: Job, delay_ms: int) -> None:
        ready_at = time.monotonic() + delay_ms / 1000
        heapq.heappush(self._heap, (ready_at, next(self._sequence), job))
        self._notify.set()
