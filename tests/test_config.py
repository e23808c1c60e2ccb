"""Tests for EngineConfig defaults and environment overrides."""

from pyweft import EngineConfig
from pyweft.models import EXPONENTIAL


def test_defaults():
    config = EngineConfig()
    assert config.retries == 0
    assert config.retry_delay == 0
    assert config.orchestrator_queue_name == "weft-workflow-orchestrator"
    assert config.step_worker_queue_name == "weft-workflow-step-worker"
    assert config.sleeper_rpc_name == "weftWorkflowSleeper"
    assert config.retry_policy.max_attempts == 1


def test_from_env_without_variables(monkeypatch):
    for name in ("WEFT_RETRIES", "WEFT_RETRY_DELAY", "WEFT_ORCHESTRATOR_QUEUE"):
        monkeypatch.delenv(name, raising=False)
    assert EngineConfig.from_env() == EngineConfig()


def test_from_env_overrides(monkeypatch):
    monkeypatch.setenv("WEFT_RETRIES", "4")
    monkeypatch.setenv("WEFT_RETRY_DELAY", "250")
    monkeypatch.setenv("WEFT_STEP_WORKER_QUEUE", "steps")
    config = EngineConfig.from_env()
    assert config.retries == 4
    assert config.retry_delay == 250
    assert config.step_worker_queue_name == "steps"
    assert config.retry_policy.delay_for_attempt(1) == 250


def test_from_env_exponential(monkeypatch):
    monkeypatch.setenv("WEFT_RETRY_DELAY", "exponential")
    monkeypatch.setenv("WEFT_RETRIES", "2")
    config = EngineConfig.from_env()
    assert config.retry_delay == EXPONENTIAL
    assert config.retry_policy.backoff().type == "exponential"
