"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from pathlib import Path

import pytest

from atomic_workflow.core.config import ExecutionPolicy
from atomic_workflow.llm.provider import ModelClient, ModelRequest, ModelResponse
from atomic_workflow.state.checkpoints import InMemoryCheckpointStore
from atomic_workflow.state.decisions import InMemoryDecisionStore
from atomic_workflow.workflow.journal import DecisionJournal
from atomic_workflow.workflow.models import WorkflowState


class ScriptedModelClient(ModelClient):
    """Replays a fixed script: each call pops one response or raises one error."""

    def __init__(self, script: Iterable[ModelResponse | BaseException]) -> None:
        self.script = list(script)
        self.requests: list[ModelRequest] = []

    async def call(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        if not self.script:
            raise AssertionError("Unexpected model call")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class RecordingSleep:
    """Stands in for asyncio.sleep; remembers the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    state_dir = tmp_path / ".state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def policy() -> ExecutionPolicy:
    """Provide a policy with small, test-friendly limits."""
    return ExecutionPolicy(
        default_model="test-model",
        model_aliases={"sonnet": "test-sonnet"},
        default_max_tokens=256,
        llm_timeout_ms=1_000,
        llm_max_retries=3,
        command_timeout_ms=10_000,
    )


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_client() -> Callable[..., ScriptedModelClient]:
    """Build a scripted model client: `make_client(response, error, ...)`."""

    def factory(*script: ModelResponse | BaseException) -> ScriptedModelClient:
        return ScriptedModelClient(script)

    return factory


@pytest.fixture
def checkpoints() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()


@pytest.fixture
def decision_store() -> InMemoryDecisionStore:
    return InMemoryDecisionStore()


@pytest.fixture
def journal(decision_store: InMemoryDecisionStore) -> DecisionJournal:
    return DecisionJournal(decision_store)


@pytest.fixture
def state() -> WorkflowState:
    """Provide a fresh run state for executor-level tests."""
    return WorkflowState(
        session_id="sess_test",
        project_id="proj-1",
        workflow_id="cpo-phase",
        current_node="start",
    )
