"""Execution engine.

One tick: load the current node, resolve its dynamic fields, dispatch to its
executor, append the result to step history, resolve the transition, then
persist the complete state. The engine never resumes a run that is
`waiting_user` or `paused` on its own; that takes an explicit `resume()`.

Stores are synchronous; the engine calls them through `asyncio.to_thread`.
Exceptions raised by a store are not step failures: they propagate and leave
the run for external recovery.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Iterable, Mapping
from typing import Any

from atomic_workflow.core.config import ExecutionPolicy
from atomic_workflow.core.errors import (
    IllegalTransitionError,
    SessionNotFoundError,
    StepErrorKind,
    StepExecutionError,
    TransitionError,
    WorkflowError,
)
from atomic_workflow.core.logging import run_context
from atomic_workflow.llm.provider import ModelClient
from atomic_workflow.state.checkpoints import CheckpointStore
from atomic_workflow.workflow.journal import DecisionJournal
from atomic_workflow.workflow.loader import LoadedConfig, WorkflowRegistry, resolve_transition
from atomic_workflow.workflow.models import StepResult, WorkflowState, utc_now
from atomic_workflow.workflow.nodes import END, NodeDefinition, NodeType
from atomic_workflow.workflow.state_machine import RunStatus
from atomic_workflow.workflow.steps.base import StepExecutor
from atomic_workflow.workflow.steps.code_step import CodeStepExecutor, HandlerRegistry
from atomic_workflow.workflow.steps.command_step import CommandStepExecutor
from atomic_workflow.workflow.steps.eval_step import EvalStepExecutor
from atomic_workflow.workflow.steps.llm_step import LlmStepExecutor, Sleep
from atomic_workflow.workflow.steps.nested_step import NestedWorkflowStepExecutor

logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "Cancelled by user"
CHILD_ABANDONED = "Nested run abandoned by its parent step"


def new_session_id() -> str:
    return f"sess_{secrets.token_hex(8)}"


def new_checkpoint_id() -> str:
    return f"cp_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class WorkflowEngine:
    """Drives runs of one loaded workflow against the injected collaborators."""

    def __init__(
        self,
        loaded: LoadedConfig,
        *,
        checkpoints: CheckpointStore,
        model_client: ModelClient | None = None,
        handlers: HandlerRegistry | None = None,
        journal: DecisionJournal | None = None,
        policy: ExecutionPolicy | None = None,
        workflows: WorkflowRegistry | None = None,
        sleep: Sleep = asyncio.sleep,
        executors: Iterable[StepExecutor] = (),
    ) -> None:
        self.loaded = loaded
        self.checkpoints = checkpoints
        self.model_client = model_client
        self.handlers = handlers or HandlerRegistry()
        self.journal = journal
        self.policy = policy or ExecutionPolicy()
        self.workflows = workflows or WorkflowRegistry()
        if loaded.id not in self.workflows:
            self.workflows.register(loaded)
        self._sleep = sleep
        self._extra_executors = list(executors)

        self._executors: dict[NodeType, StepExecutor] = {}
        defaults: list[StepExecutor] = [
            EvalStepExecutor(),
            CommandStepExecutor(self.policy),
            CodeStepExecutor(self.handlers, deadline_seconds=self.policy.step_deadline_seconds),
            NestedWorkflowStepExecutor(self._run_child, deadline_seconds=self.policy.step_deadline_seconds),
        ]
        if model_client is not None:
            defaults.append(LlmStepExecutor(model_client, self.policy, journal=journal, sleep=sleep))
        for executor in [*defaults, *self._extra_executors]:
            for node_type in executor.node_types:
                self._executors[node_type] = executor

        self._active: set[str] = set()
        self._pause_requested: set[str] = set()
        self._cancel_requested: set[str] = set()

    # -- persistence -----------------------------------------------------

    async def _load(self, session_id: str) -> WorkflowState:
        state = await asyncio.to_thread(self.checkpoints.get, session_id)
        if state is None:
            raise SessionNotFoundError(session_id)
        return state

    async def _persist(self, state: WorkflowState) -> None:
        state.checkpoint = new_checkpoint_id()
        state.last_activity_at = utc_now()
        await asyncio.to_thread(self.checkpoints.save, state)

    # -- lifecycle -------------------------------------------------------

    async def start(
        self,
        *,
        project_id: str,
        session_id: str | None = None,
        data: Mapping[str, Any] | None = None,
    ) -> WorkflowState:
        """Create and persist a `pending` run positioned at the start node."""
        session_id = session_id or new_session_id()
        if await asyncio.to_thread(self.checkpoints.get, session_id) is not None:
            raise WorkflowError(f"Session already exists: {session_id}")

        state = WorkflowState(
            session_id=session_id,
            project_id=project_id,
            workflow_id=self.loaded.id,
            current_node=self.loaded.config.start_node,
        )
        state.merge_data(self.loaded.config.initial_data)
        state.merge_data(dict(data or {}))
        await self._persist(state)
        logger.info(
            "Run created",
            extra={"session_id": session_id, "workflow_id": self.loaded.id, "project_id": project_id},
        )
        return state

    async def run(self, session_id: str) -> WorkflowState:
        """Drive a run until it completes, fails or halts.

        A pending run is started; a run left `running` by a crash continues
        from its last checkpoint. Halted runs need `resume()`.
        """
        state = await self._load(session_id)
        if state.status in (RunStatus.COMPLETED, RunStatus.FAILED):
            return state
        if state.status in (RunStatus.WAITING_USER, RunStatus.PAUSED):
            raise WorkflowError(f"Run {session_id} is {state.status.value}; call resume() to continue")
        if state.status is RunStatus.PENDING:
            state.move_to(RunStatus.RUNNING)
            logger.info("Run started", extra={"session_id": session_id, "workflow_id": state.workflow_id})
        else:
            logger.info("Run recovered", extra={"session_id": session_id, "node": state.current_node})
        return await self._drive(state)

    async def resume(self, session_id: str) -> WorkflowState:
        """Externally triggered resume of a halted (or interrupted) run."""
        state = await self._load(session_id)
        if state.status is not RunStatus.RUNNING:
            state.move_to(RunStatus.RUNNING)
        self._pause_requested.discard(session_id)
        logger.info("Run resumed", extra={"session_id": session_id, "node": state.current_node})
        return await self._drive(state)

    async def pause(self, session_id: str) -> WorkflowState:
        """Pause a run at the next tick boundary (or now, if it is not executing)."""
        if session_id in self._active:
            self._pause_requested.add(session_id)
            logger.info("Pause requested", extra={"session_id": session_id})
            return await self._load(session_id)
        return await asyncio.to_thread(self.checkpoints.update_status, session_id, RunStatus.PAUSED)

    async def cancel(self, session_id: str) -> WorkflowState:
        """Fail a run with `lastError = "Cancelled by user"`."""
        if session_id in self._active:
            self._cancel_requested.add(session_id)
            logger.info("Cancel requested", extra={"session_id": session_id})
            return await self._load(session_id)
        return await asyncio.to_thread(
            self.checkpoints.update_status, session_id, RunStatus.FAILED, CANCELLED_BY_USER
        )

    async def get_state(self, session_id: str) -> WorkflowState | None:
        return await asyncio.to_thread(self.checkpoints.get, session_id)

    async def list_runs(self, project_id: str) -> list[WorkflowState]:
        return await asyncio.to_thread(self.checkpoints.list_by_project, project_id)

    async def get_active_run(self, project_id: str) -> WorkflowState | None:
        return await asyncio.to_thread(self.checkpoints.get_active, project_id)

    # -- answers ---------------------------------------------------------

    async def submit_answer(
        self,
        session_id: str,
        question_id: str,
        answer: Any,
        *,
        question_text: str | None = None,
        recommendation: Any = None,
        category: str | None = None,
        cascade_group: str | None = None,
        resume: bool = True,
    ) -> WorkflowState:
        """Store an answer, journal it, and resume the run if it was waiting."""
        if session_id in self._active:
            raise WorkflowError(f"Run is executing; answers are accepted only while halted: {session_id}")
        state = await self._load(session_id)
        state.answers[question_id] = answer
        if question_id in state.skipped_questions:
            state.skipped_questions.remove(question_id)
        if self.journal is not None:
            await asyncio.to_thread(
                self.journal.log_answer,
                state,
                question_id=question_id,
                question_text=question_text or question_id,
                answer=answer,
                recommendation=recommendation,
                category=category,
                cascade_group=cascade_group,
            )
        await self._persist(state)
        if resume and state.status is RunStatus.WAITING_USER:
            return await self.resume(session_id)
        return state

    async def skip_question(self, session_id: str, question_id: str, *, resume: bool = True) -> WorkflowState:
        if session_id in self._active:
            raise WorkflowError(f"Run is executing; answers are accepted only while halted: {session_id}")
        state = await self._load(session_id)
        state.skip(question_id)
        await self._persist(state)
        if resume and state.status is RunStatus.WAITING_USER:
            return await self.resume(session_id)
        return state

    # -- loop ------------------------------------------------------------

    async def _drive(self, state: WorkflowState) -> WorkflowState:
        session_id = state.session_id
        if session_id in self._active:
            raise WorkflowError(f"Run is already executing: {session_id}")
        self._active.add(session_id)
        try:
            with run_context(session_id=session_id, workflow_id=state.workflow_id):
                await self._persist(state)
                while state.status is RunStatus.RUNNING:
                    if session_id in self._cancel_requested:
                        self._cancel_requested.discard(session_id)
                        self._fail(state, CANCELLED_BY_USER)
                        await self._persist(state)
                        break
                    if session_id in self._pause_requested:
                        self._pause_requested.discard(session_id)
                        state.move_to(RunStatus.PAUSED)
                        logger.info("Run paused", extra={"session_id": session_id, "node": state.current_node})
                        await self._persist(state)
                        break
                    with run_context(node=state.current_node):
                        await self._tick(state)
                    await self._persist(state)
        finally:
            self._active.discard(session_id)
            self._pause_requested.discard(session_id)
            self._cancel_requested.discard(session_id)

        log = logger.warning if state.status is RunStatus.FAILED else logger.info
        log(
            "Run halted",
            extra={
                "session_id": session_id,
                "workflow_id": state.workflow_id,
                "status": state.status.value,
                "node": state.current_node,
                "last_error": state.last_error,
            },
        )
        return state

    def _fail(self, state: WorkflowState, error: str) -> None:
        state.last_error = error
        state.move_to(RunStatus.FAILED)

    async def _tick(self, state: WorkflowState) -> None:
        name = state.current_node
        try:
            node = self.loaded.node(name)
        except KeyError:
            self._fail(state, f'Node "{name}" is not declared in workflow "{self.loaded.id}"')
            return

        if node.requires_answer and not state.is_answered(node.requires_answer):
            state.move_to(RunStatus.WAITING_USER)
            logger.info(
                "Waiting for answer",
                extra={"session_id": state.session_id, "node": name, "question_id": node.requires_answer},
            )
            return

        result, resolved = await self._dispatch(name, node, state)
        state.record_step(result)
        if not result.ok:
            self._fail(state, result.error or f'Step "{name}" failed')
            return

        self._executors[resolved.node_type].apply(resolved, result, state)
        try:
            target = resolve_transition(node.next, state.snapshot(), self.loaded.valid_node_names, name)
        except TransitionError as e:
            self._fail(state, str(e))
            return

        logger.info("Transition", extra={"session_id": state.session_id, "node": name, "target": target})
        state.current_node = target
        if target == END:
            state.move_to(RunStatus.COMPLETED)

    async def _dispatch(
        self, name: str, node: NodeDefinition, state: WorkflowState
    ) -> tuple[StepResult, NodeDefinition]:
        logger.debug(
            "Dispatching node",
            extra={"session_id": state.session_id, "node": name, "node_type": node.node_type.value},
        )
        executor = self._executors.get(node.node_type)
        if executor is None:
            return (
                StepResult(
                    step_id=name,
                    status="failed",
                    error=f'No executor configured for node type "{node.node_type.value}"',
                    error_kind=StepErrorKind.HANDLER_NOT_FOUND.value,
                ),
                node,
            )
        try:
            resolved = node.resolve(state.snapshot())
        except Exception as e:
            return (
                StepResult(
                    step_id=name,
                    status="failed",
                    error=f'Node "{name}" could not resolve its dynamic fields: {e}',
                    error_kind=StepErrorKind.DYNAMIC_RESOLUTION_FAILED.value,
                ),
                node,
            )
        return await executor.execute(name, resolved, state), resolved

    # -- nesting ---------------------------------------------------------

    def _child_engine(self, loaded: LoadedConfig) -> WorkflowEngine:
        return WorkflowEngine(
            loaded,
            checkpoints=self.checkpoints,
            model_client=self.model_client,
            handlers=self.handlers,
            journal=self.journal,
            policy=self.policy,
            workflows=self.workflows,
            sleep=self._sleep,
            executors=self._extra_executors,
        )

    async def _run_child(
        self, *, workflow_id: str, session_id: str, project_id: str, data: dict[str, Any]
    ) -> WorkflowState:
        loaded = self.workflows.get(workflow_id)
        if loaded is None:
            known = ", ".join(self.workflows.ids())
            raise StepExecutionError(
                f'Unknown workflow "{workflow_id}". Registered workflows are: {known}',
                kind=StepErrorKind.CHILD_WORKFLOW_FAILED,
            )
        child = self._child_engine(loaded)
        await child.start(project_id=project_id, session_id=session_id, data=data)
        try:
            return await child.run(session_id)
        except asyncio.CancelledError:
            # Parent deadline or task cancellation: do not leave the child `running`.
            logger.warning("Nested run abandoned", extra={"session_id": session_id, "workflow_id": workflow_id})
            try:
                await asyncio.shield(
                    asyncio.to_thread(self.checkpoints.update_status, session_id, RunStatus.FAILED, CHILD_ABANDONED)
                )
            except IllegalTransitionError:
                logger.info("Nested run had already finished", extra={"session_id": session_id})
            raise
