"""Engine configuration.

Set once when the engine is built. Everything else the engine needs lives in
the store or is passed per call.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from pyweft.models.retry import EXPONENTIAL, RetryDelay, RetryPolicy


@dataclass(frozen=True)
class EngineConfig:
    """
    Static engine configuration.

    Attributes:
        retries: Default retry bound for steps and graph nodes
        retry_delay: Default retry delay (milliseconds or "exponential")
        orchestrator_queue_name: Queue receiving orchestrator continuations
        step_worker_queue_name: Queue receiving step-worker jobs
        sleeper_rpc_name: RPC the scheduler calls when a sleep elapses
        inline_poll_interval: Seconds between status polls in
            ``run_to_completion`` and ``drain``

    Example:
        ```python
        config = EngineConfig(retries=3, retry_delay="exponential")
        engine = WorkflowEngine(store, registry, rpc, config=config)
        ```
    """

    retries: int = 0
    retry_delay: RetryDelay = 0
    orchestrator_queue_name: str = "weft-workflow-orchestrator"
    step_worker_queue_name: str = "weft-workflow-step-worker"
    sleeper_rpc_name: str = "weftWorkflowSleeper"
    inline_poll_interval: float = field(default=0.05)

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(retries=self.retries, retry_delay=self.retry_delay)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """
        Build a configuration from ``WEFT_*`` environment variables.

        Reads WEFT_RETRIES, WEFT_RETRY_DELAY, WEFT_ORCHESTRATOR_QUEUE,
        WEFT_STEP_WORKER_QUEUE and WEFT_SLEEPER_RPC; unset variables keep
        their defaults.
        """
        defaults = cls()
        raw_delay = os.environ.get("WEFT_RETRY_DELAY")
        retry_delay: RetryDelay = defaults.retry_delay
        if raw_delay is not None:
            retry_delay = EXPONENTIAL if raw_delay == EXPONENTIAL else int(raw_delay)

        return cls(
            retries=int(os.environ.get("WEFT_RETRIES", defaults.retries)),
            retry_delay=retry_delay,
            orchestrator_queue_name=os.environ.get(
                "WEFT_ORCHESTRATOR_QUEUE", defaults.orchestrator_queue_name
            ),
            step_worker_queue_name=os.environ.get(
                "WEFT_STEP_WORKER_QUEUE", defaults.step_worker_queue_name
            ),
            sleeper_rpc_name=os.environ.get("WEFT_SLEEPER_RPC", defaults.sleeper_rpc_name),
        )
