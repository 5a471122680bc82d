"""Nested workflow steps.

The parent step blocks until the child run halts. A child that does not end
`completed` fails the parent step; retrying is the child's business, never
the parent's.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Mapping
from typing import Any, ClassVar, Protocol

from atomic_workflow.core.errors import StepErrorKind, StepExecutionError
from atomic_workflow.workflow.models import StepResult, WorkflowState
from atomic_workflow.workflow.nodes import NodeDefinition, NodeType, WorkflowNode
from atomic_workflow.workflow.state_machine import RunStatus
from atomic_workflow.workflow.steps.base import StepExecutor, StepOutput

logger = logging.getLogger(__name__)


class ChildRunner(Protocol):
    def __call__(
        self, *, workflow_id: str, session_id: str, project_id: str, data: dict[str, Any]
    ) -> Awaitable[WorkflowState]: ...


def child_session_id(parent_session_id: str, step_id: str, *, now_ms: int | None = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{parent_session_id}_{step_id}_{now_ms}"


def build_child_data(node: WorkflowNode, parent_data: Mapping[str, Any]) -> dict[str, Any]:
    """Seed the child's data.

    With `input_mapping`, only the mapped parent keys are passed (renamed);
    otherwise the child starts from a shallow copy of the parent's data.
    Declared `input` is layered on top either way.
    """
    if node.input_mapping is not None:
        data = {
            child_key: parent_data[parent_key]
            for parent_key, child_key in node.input_mapping.items()
            if parent_key in parent_data
        }
    else:
        data = dict(parent_data)
    data.update(node.input or {})
    return data


def map_child_output(
    child_data: Mapping[str, Any], output_mapping: Mapping[str, str] | None
) -> dict[str, Any]:
    """What to merge into the parent's data.

    Without a mapping, everything; with one, only the mapped keys (renamed).
    """
    if output_mapping is None:
        return dict(child_data)
    return {
        parent_key: child_data[child_key]
        for child_key, parent_key in output_mapping.items()
        if child_key in child_data
    }


class NestedWorkflowStepExecutor(StepExecutor):
    node_types: ClassVar[frozenset[NodeType]] = frozenset({NodeType.WORKFLOW})
    default_error_kind = StepErrorKind.CHILD_WORKFLOW_FAILED

    def __init__(self, run_child: ChildRunner, *, deadline_seconds: float | None = None) -> None:
        self._run_child = run_child
        self.deadline_seconds = deadline_seconds

    async def run(self, step_id: str, node: NodeDefinition, state: WorkflowState) -> StepOutput:
        if not isinstance(node, WorkflowNode):
            raise TypeError(f"Not a workflow node: {type(node).__name__}")

        session_id = child_session_id(state.session_id, step_id)
        logger.info(
            "Starting nested workflow",
            extra={"parent_session_id": state.session_id, "child_session_id": session_id, "workflow_id": node.workflow_id},
        )
        child = await self._run_child(
            workflow_id=node.workflow_id,
            session_id=session_id,
            project_id=state.project_id,
            data=build_child_data(node, state.data),
        )

        if child.status is RunStatus.FAILED:
            raise StepExecutionError(
                child.last_error or f'Nested workflow "{node.workflow_id}" failed',
                kind=StepErrorKind.CHILD_WORKFLOW_FAILED,
            )
        if child.status is not RunStatus.COMPLETED:
            raise StepExecutionError(
                f'Nested workflow "{node.workflow_id}" stopped with status {child.status.value}',
                kind=StepErrorKind.CHILD_WORKFLOW_FAILED,
            )

        return StepOutput(
            output={
                "workflowId": node.workflow_id,
                "childSessionId": child.session_id,
                "status": child.status.value,
                "data": child.data,
            }
        )

    def apply(self, node: NodeDefinition, result: StepResult, state: WorkflowState) -> None:
        child_data = (result.output or {}).get("data") or {}
        state.merge_data(map_child_output(child_data, getattr(node, "output_mapping", None)))
