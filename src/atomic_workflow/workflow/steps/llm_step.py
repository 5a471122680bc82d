"""LLM-backed steps: agent, dynamic-agent and slash-command nodes.

Each attempt races the model call against a per-attempt timer. A call that
loses the race is abandoned, not cancelled: it may still complete later, and
its result is discarded. Retries re-issue the full call after an exponential
backoff and are local to this executor.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from string import Template
from typing import Any, ClassVar

from atomic_workflow.core.config import ExecutionPolicy
from atomic_workflow.core.errors import StepErrorKind, StepExecutionError
from atomic_workflow.llm.provider import (
    ModelCallError,
    ModelClient,
    ModelErrorKind,
    ModelRequest,
    ModelResponse,
)
from atomic_workflow.workflow.journal import DecisionJournal
from atomic_workflow.workflow.models import StepResult, WorkflowState
from atomic_workflow.workflow.nodes import (
    LLM_NODE_TYPES,
    AgentNode,
    DecisionCapture,
    DynamicAgentNode,
    NodeDefinition,
    SlashCommandNode,
)
from atomic_workflow.workflow.steps.base import StepExecutor, StepOutput

logger = logging.getLogger(__name__)

NO_ANSWERS = "No previous answers yet."

_RETRYABLE_KINDS = frozenset({ModelErrorKind.RATE_LIMIT, ModelErrorKind.TIMEOUT, ModelErrorKind.API_ERROR})

_STEP_ERROR_KINDS: dict[ModelErrorKind, StepErrorKind] = {
    ModelErrorKind.RATE_LIMIT: StepErrorKind.RATE_LIMIT,
    ModelErrorKind.TIMEOUT: StepErrorKind.TIMEOUT,
    ModelErrorKind.API_ERROR: StepErrorKind.API_ERROR,
    ModelErrorKind.INVALID_REQUEST: StepErrorKind.MODEL_ERROR,
    ModelErrorKind.UNKNOWN: StepErrorKind.MODEL_ERROR,
}

_JSON_TYPES: dict[str, type | tuple[type, ...]] = {
    "object": dict,
    "array": list,
    "string": str,
    "number": (int, float),
    "integer": int,
    "boolean": bool,
}

Sleep = Callable[[float], Awaitable[Any]]


def backoff_delay_ms(attempt: int, *, base_ms: int = 1_000, max_ms: int = 30_000) -> int:
    """Delay before retry number `attempt + 1`: min(base * 2^attempt, max)."""
    return min(base_ms * 2**attempt, max_ms)


def is_retryable(error: ModelCallError) -> bool:
    return error.kind in _RETRYABLE_KINDS and error.retryable


def summarize_answers(answers: Mapping[str, Any]) -> str:
    """One `question: answer` line per answer, for prompt context."""
    if not answers:
        return NO_ANSWERS
    lines = []
    for question_id, answer in answers.items():
        if isinstance(answer, dict | list):
            lines.append(f"{question_id}: {json.dumps(answer, ensure_ascii=False, default=str)}")
        else:
            lines.append(f"{question_id}: {answer}")
    return "\n".join(lines)


def _prompt_values(state: WorkflowState) -> dict[str, str]:
    values: dict[str, str] = {}
    for key, value in state.data.items():
        if isinstance(value, str):
            values[key] = value
        else:
            values[key] = json.dumps(value, ensure_ascii=False, default=str)
    values["answers_summary"] = summarize_answers(state.answers)
    values["answers"] = json.dumps(state.answers, ensure_ascii=False, default=str)
    values["workflow_id"] = state.workflow_id
    values["project_id"] = state.project_id
    return values


def compile_prompt(text: str, state: WorkflowState) -> str:
    """Substitute `$name` / `${name}` placeholders from run data and answers.

    Unknown placeholders are left as written.
    """
    return Template(text).safe_substitute(_prompt_values(state))


def validate_structured_output(output: Any, schema: Mapping[str, Any] | None) -> list[str]:
    """Top-level type and required-property checks. Returns the problems found."""
    if output is None:
        return ["Output is empty"]
    if not schema:
        return []
    errors: list[str] = []
    expected = schema.get("type")
    if isinstance(expected, str) and expected in _JSON_TYPES:
        python_type = _JSON_TYPES[expected]
        if not isinstance(output, python_type) or (expected != "boolean" and isinstance(output, bool)):
            errors.append(f"Expected {expected}, got {type(output).__name__}")
    if expected == "object" and isinstance(output, dict):
        for prop in schema.get("required") or ():
            if prop not in output:
                errors.append(f"Missing required property: {prop}")
    return errors


def _discard_late_result(task: asyncio.Future[Any]) -> None:
    if not task.cancelled():
        task.exception()


class LlmStepExecutor(StepExecutor):
    """Runs agent-like nodes against a `ModelClient`."""

    node_types: ClassVar[frozenset] = LLM_NODE_TYPES
    default_error_kind = StepErrorKind.MODEL_ERROR

    def __init__(
        self,
        client: ModelClient,
        policy: ExecutionPolicy,
        *,
        journal: DecisionJournal | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.client = client
        self.policy = policy
        self.journal = journal
        self._sleep = sleep
        self._abandoned: set[asyncio.Future[ModelResponse]] = set()

    def build_request(self, node: NodeDefinition, state: WorkflowState) -> ModelRequest:
        policy = self.policy
        if isinstance(node, SlashCommandNode):
            return ModelRequest(
                model=policy.resolve_model(node.model),
                system_prompt="",
                user_prompt=compile_prompt(node.instruction, state),
                max_tokens=node.max_tokens or policy.default_max_tokens,
            )
        if isinstance(node, AgentNode | DynamicAgentNode):
            system = node.system or ""
            prompt = node.prompt or ""
            return ModelRequest(
                model=policy.resolve_model(node.model),
                system_prompt=compile_prompt(system, state),
                user_prompt=compile_prompt(prompt, state) if prompt else summarize_answers(state.answers),
                max_tokens=node.max_tokens or policy.default_max_tokens,
                temperature=node.temperature,
                output_schema=node.output_schema,
                tools=list(node.tools or []),
            )
        raise TypeError(f"Not an LLM node: {type(node).__name__}")

    async def _call_once(self, request: ModelRequest, timeout_ms: int) -> ModelResponse:
        task = asyncio.ensure_future(self.client.call(request))
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        if task in done:
            return task.result()
        # Abandon the losing call; keep a reference until it settles.
        self._abandoned.add(task)
        task.add_done_callback(self._abandoned.discard)
        task.add_done_callback(_discard_late_result)
        raise ModelCallError(f"LLM call timed out after {timeout_ms}ms", kind=ModelErrorKind.TIMEOUT)

    async def call_with_retry(
        self,
        request: ModelRequest,
        *,
        timeout_ms: int,
        max_retries: int,
        state: WorkflowState,
        step_id: str,
    ) -> ModelResponse:
        attempt = 0
        while True:
            try:
                return await self._call_once(request, timeout_ms)
            except ModelCallError as e:
                if not is_retryable(e) or attempt >= max_retries:
                    raise StepExecutionError(str(e), kind=_STEP_ERROR_KINDS[e.kind]) from e
                delay_ms = backoff_delay_ms(
                    attempt, base_ms=self.policy.backoff_base_ms, max_ms=self.policy.backoff_max_ms
                )
                logger.warning(
                    "Retrying model call",
                    extra={
                        "step_id": step_id,
                        "session_id": state.session_id,
                        "attempt": attempt + 1,
                        "delay_ms": delay_ms,
                        "error_kind": e.kind.value,
                    },
                )
                state.retry_count += 1
                await self._sleep(delay_ms / 1000)
                attempt += 1

    async def run(self, step_id: str, node: NodeDefinition, state: WorkflowState) -> StepOutput:
        request = self.build_request(node, state)
        retryable = getattr(node, "retryable", True)
        response = await self.call_with_retry(
            request,
            timeout_ms=getattr(node, "timeout", None) or self.policy.llm_timeout_ms,
            max_retries=self.policy.llm_max_retries if retryable else 0,
            state=state,
            step_id=step_id,
        )

        if request.output_schema is not None:
            problems = validate_structured_output(response.structured, request.output_schema)
            if problems:
                raise StepExecutionError(
                    "Structured output failed validation: " + "; ".join(problems),
                    kind=StepErrorKind.MODEL_ERROR,
                )

        decision: DecisionCapture | None = getattr(node, "decision", None)
        if decision is not None:
            await self._record_decision(decision, response, state)

        return StepOutput(
            output={"content": response.content, "structured": response.structured},
            tokens_used=response.tokens_used,
        )

    async def _record_decision(
        self, capture: DecisionCapture, response: ModelResponse, state: WorkflowState
    ) -> None:
        answer = response.structured if response.structured is not None else response.content
        if self.journal is not None:
            recommendation = state.data.get(capture.recommendation_key) if capture.recommendation_key else None
            await asyncio.to_thread(
                self.journal.log_answer,
                state,
                question_id=capture.question_id,
                question_text=capture.question_text,
                answer=answer,
                recommendation=recommendation,
                category=capture.category,
                cascade_group=capture.cascade_group,
            )
        # Only once the journal has accepted it.
        state.answers[capture.question_id] = answer

    def apply(self, node: NodeDefinition, result: StepResult, state: WorkflowState) -> None:
        key = getattr(node, "result_key", "lastAgentResult")
        state.merge_data({key: dict(result.output or {})})
