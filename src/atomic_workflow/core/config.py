"""Settings for the workflow engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

The engine itself never reads settings directly: hosts build an
:class:`ExecutionPolicy` from them and inject it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkflowSettings(BaseSettings):
    """Settings for running workflows from a host process.

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `WorkflowSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_dir: Path = Field(
        default=Path(".atomic/checkpoints"),
        validation_alias="ATOMIC_STATE_DIR",
        description="Directory where run checkpoints are persisted (one JSON file per session)",
    )
    decisions_file: Path = Field(
        default=Path(".atomic/decisions.json"),
        validation_alias="ATOMIC_DECISIONS_FILE",
        description="JSON file holding the decision journal",
    )
    config_path: str = Field(
        default="atomic_config.py",
        validation_alias="ATOMIC_CONFIG",
        description="Default workflow definition module (file path or dotted module name)",
    )

    openai_api_key: str = Field(
        default="",
        validation_alias="OPENAI_API_KEY",
        description="API key for the OpenAI-compatible model endpoint",
    )
    openai_base_url: str | None = Field(
        default=None,
        validation_alias="OPENAI_BASE_URL",
        description="Override for OpenAI-compatible endpoints",
    )
    default_model: str = Field(
        default="gpt-4o-mini",
        validation_alias="ATOMIC_DEFAULT_MODEL",
        description="Model used by agent nodes that do not name one",
    )
    model_aliases: dict[str, str] = Field(
        default_factory=dict,
        validation_alias="ATOMIC_MODEL_ALIASES",
        description="JSON object mapping short model names (e.g. 'sonnet') to concrete model ids",
    )
    default_max_tokens: int = Field(
        default=2000,
        gt=0,
        validation_alias="ATOMIC_DEFAULT_MAX_TOKENS",
    )

    llm_timeout_ms: int = Field(
        default=60_000,
        gt=0,
        validation_alias="ATOMIC_LLM_TIMEOUT_MS",
        description="Per-attempt timeout for model calls unless the node overrides it",
    )
    llm_max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        validation_alias="ATOMIC_LLM_MAX_RETRIES",
    )
    command_timeout_ms: int = Field(
        default=300_000,
        gt=0,
        validation_alias="ATOMIC_COMMAND_TIMEOUT_MS",
    )
    step_deadline_seconds: float | None = Field(
        default=None,
        gt=0,
        validation_alias="ATOMIC_STEP_DEADLINE_SECONDS",
        description=(
            "Optional outer deadline for code and nested-workflow steps. "
            "Unset means those steps may block indefinitely."
        ),
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    def execution_policy(self) -> ExecutionPolicy:
        return ExecutionPolicy(
            default_model=self.default_model,
            model_aliases=dict(self.model_aliases),
            default_max_tokens=self.default_max_tokens,
            llm_timeout_ms=self.llm_timeout_ms,
            llm_max_retries=self.llm_max_retries,
            command_timeout_ms=self.command_timeout_ms,
            step_deadline_seconds=self.step_deadline_seconds,
        )


@dataclass(frozen=True, slots=True)
class ExecutionPolicy:
    """Numeric policy the executors run under."""

    default_model: str = "gpt-4o-mini"
    model_aliases: dict[str, str] = field(default_factory=dict)
    default_max_tokens: int = 2000
    llm_timeout_ms: int = 60_000
    llm_max_retries: int = 3
    backoff_base_ms: int = 1_000
    backoff_max_ms: int = 30_000
    command_timeout_ms: int = 300_000
    step_deadline_seconds: float | None = None

    def resolve_model(self, model: str | None) -> str:
        name = model or self.default_model
        return self.model_aliases.get(name, name)
