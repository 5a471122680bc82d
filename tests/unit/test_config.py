"""Unit tests for configuration."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from atomic_workflow.core.config import ExecutionPolicy, WorkflowSettings

_ENV_VARS = (
    "LOG_LEVEL",
    "ATOMIC_STATE_DIR",
    "ATOMIC_DECISIONS_FILE",
    "ATOMIC_CONFIG",
    "OPENAI_API_KEY",
    "OPENAI_BASE_URL",
    "ATOMIC_DEFAULT_MODEL",
    "ATOMIC_MODEL_ALIASES",
    "ATOMIC_DEFAULT_MAX_TOKENS",
    "ATOMIC_LLM_TIMEOUT_MS",
    "ATOMIC_LLM_MAX_RETRIES",
    "ATOMIC_COMMAND_TIMEOUT_MS",
    "ATOMIC_STEP_DEADLINE_SECONDS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_settings_defaults() -> None:
    settings = WorkflowSettings(_env_file=None)

    assert settings.log_level == "INFO"
    assert settings.openai_api_key == ""
    assert settings.default_model == "gpt-4o-mini"
    assert settings.llm_timeout_ms == 60_000
    assert settings.llm_max_retries == 3
    assert settings.command_timeout_ms == 300_000
    assert settings.step_deadline_seconds is None
    assert settings.model_aliases == {}


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ATOMIC_LLM_MAX_RETRIES", "5")
    monkeypatch.setenv("ATOMIC_MODEL_ALIASES", '{"sonnet": "claude-sonnet"}')
    monkeypatch.setenv("ATOMIC_STEP_DEADLINE_SECONDS", "2.5")

    settings = WorkflowSettings(_env_file=None)

    assert settings.llm_max_retries == 5
    assert settings.model_aliases == {"sonnet": "claude-sonnet"}
    assert settings.step_deadline_seconds == 2.5


def test_settings_read_env_file(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("ATOMIC_DEFAULT_MODEL=local-model\nLOG_LEVEL=DEBUG\n", encoding="utf-8")

    settings = WorkflowSettings(_env_file=env_file)

    assert settings.default_model == "local-model"
    assert settings.log_level == "DEBUG"


def test_settings_reject_out_of_range_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ATOMIC_LLM_MAX_RETRIES", "11")

    with pytest.raises(ValidationError):
        WorkflowSettings(_env_file=None)


def test_execution_policy_from_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ATOMIC_LLM_TIMEOUT_MS", "1500")
    monkeypatch.setenv("ATOMIC_MODEL_ALIASES", '{"fast": "tiny-model"}')

    policy = WorkflowSettings(_env_file=None).execution_policy()

    assert isinstance(policy, ExecutionPolicy)
    assert policy.llm_timeout_ms == 1500
    assert policy.resolve_model("fast") == "tiny-model"
    assert policy.resolve_model("other") == "other"
    assert policy.resolve_model(None) == "gpt-4o-mini"
