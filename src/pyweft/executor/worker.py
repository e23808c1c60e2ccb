"""
Worker draining an in-memory queue into the engine.

Design Patterns:
- Template Method: ``_process`` fixes the deliver/retry/dead-letter skeleton
- Builder: ``with_poll_interval()`` for configuration

Routes each job by queue name:

    orchestrator queue  → WorkflowEngine.orchestrate_workflow
    step-worker queue   → WorkflowEngine.execute_workflow_step
    scheduled RPCs      → sleeper callback, or the RPC service

A job that raises is redelivered after its backoff while attempts remain,
then moved to the queue's dead letters.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from pyweft.executor.queue import SCHEDULED_RPC_QUEUE, InMemoryQueueService, Job

if TYPE_CHECKING:
    from pyweft.executor.engine import WorkflowEngine

logger = logging.getLogger(__name__)


class WorkerError(Exception):
    """Worker operation failed."""

    pass


class Worker:
    """Executes queued orchestrator, step-worker and scheduled-RPC jobs.

    Usage:
        worker = Worker(engine, queue, "worker-1").with_poll_interval(0.1)

        # Tests: process everything that is due, including delayed retries
        await worker.run_until_idle()

        # Services: run in the background
        handle = await worker.start()
        ...
        await handle.shutdown()
    """

    def __init__(
        self, engine: WorkflowEngine, queue: InMemoryQueueService, worker_id: str = "worker"
    ):
        self._engine = engine
        self._queue = queue
        self._worker_id = worker_id
        self._poll_interval = 1.0
        self._shutdown_event = asyncio.Event()
        self._running = False
        self.processed = 0

    def __repr__(self) -> str:
        return f"Worker(id={self._worker_id}, processed={self.processed})"

    def with_poll_interval(self, interval: float) -> Worker:
        """Upper bound on how long the idle loop sleeps between checks."""
        self._poll_interval = interval
        return self

    # ========================================================================
    # Driving
    # ========================================================================

    async def run_until_idle(self, max_jobs: int | None = None) -> int:
        """
        Process jobs until the queue is empty, waiting out delayed ones.

        Args:
            max_jobs: Stop after this many deliveries (guards runaway loops)

        Returns:
            Number of deliveries made
        """
        delivered = 0
        while max_jobs is None or delivered < max_jobs:
            job = self._queue.take_ready()
            if job is None:
                wait = self._queue.next_ready_in()
                if wait is None:
                    break
                await asyncio.sleep(wait)
                continue
            await self._process(job)
            delivered += 1
        return delivered

    async def start(self) -> WorkerHandle:
        """Start the background loop and return a handle controlling it."""
        self._running = True
        self._shutdown_event.clear()
        task = asyncio.create_task(self._run())
        logger.info(f"Worker {self._worker_id} started")
        return WorkerHandle(self, task)

    async def _run(self) -> None:
        notify = self._queue.work_notify()
        while self._running and not self._shutdown_event.is_set():
            job = self._queue.take_ready()
            if job is not None:
                await self._process(job)
                continue

            notify.clear()
            wait = self._queue.next_ready_in()
            timeout = self._poll_interval if wait is None else min(wait, self._poll_interval)
            try:
                await asyncio.wait_for(notify.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    async def shutdown(self) -> None:
        logger.info(f"Worker {self._worker_id} shutting down...")
        self._running = False
        self._shutdown_event.set()
        self._queue.work_notify().set()

    # ========================================================================
    # Delivery
    # ========================================================================

    async def _process(self, job: Job) -> None:
        self.processed += 1
        try:
            await self._dispatch(job)
        except Exception as e:
            failed = replace(job, attempts_made=job.attempts_made + 1)
            if failed.attempts_left > 0:
                backoff = job.options.backoff
                delay = backoff.delay_for_attempt(failed.attempts_made) if backoff else 0
                logger.warning(
                    f"Worker {self._worker_id}: job {job.id} on {job.queue_name} failed "
                    f"(attempt {failed.attempts_made}/{job.options.attempts}), "
                    f"redelivering in {delay}ms: {e}"
                )
                self._queue.requeue(failed, delay)
            else:
                logger.error(
                    f"Worker {self._worker_id}: job {job.id} on {job.queue_name} failed "
                    f"after {failed.attempts_made} attempt(s): {e}"
                )
                self._queue.dead_letters.append(failed)

    async def _dispatch(self, job: Job) -> None:
        config = self._engine.config
        payload = job.payload

        if job.queue_name == config.orchestrator_queue_name:
            await self._engine.orchestrate_workflow(payload["run_id"])
        elif job.queue_name == config.step_worker_queue_name:
            await self._engine.execute_workflow_step(
                payload["run_id"], payload["step_name"], payload["rpc_name"], payload["data"]
            )
        elif job.queue_name == SCHEDULED_RPC_QUEUE:
            data = payload["data"]
            if payload["rpc_name"] == config.sleeper_rpc_name:
                await self._engine.execute_workflow_sleep_completed(data["run_id"], data["step_id"])
            else:
                await self._engine.rpc(payload["rpc_name"], data, None)
        else:
            raise WorkerError(f"No handler for queue {job.queue_name!r}")


class WorkerHandle:
    """Handle for controlling a running worker.

    Usage:
        handle = await worker.start()
        await handle.shutdown()
    """

    def __init__(self, worker: Worker, task: asyncio.Task):
        self._worker = worker
        self._task = task

    def worker_id(self) -> str:
        return self._worker._worker_id

    def is_running(self) -> bool:
        return not self._task.done()

    async def shutdown(self) -> None:
        """Stop the loop after the current job and wait for it to exit."""
        await self._worker.shutdown()
        await self._task
        logger.info("Worker handle closed")

    def abort(self) -> None:
        """Cancel the loop immediately, possibly mid-job."""
        self._task.cancel()
