"""Eval steps: pure bookkeeping functions of state."""

from __future__ import annotations

from collections.abc import Mapping
from typing import ClassVar

from atomic_workflow.core.errors import StepErrorKind, StepExecutionError
from atomic_workflow.workflow.models import StepResult, WorkflowState
from atomic_workflow.workflow.nodes import EvalNode, NodeDefinition, NodeType
from atomic_workflow.workflow.steps.base import StepExecutor, StepOutput


class EvalStepExecutor(StepExecutor):
    """Calls the node's function with a snapshot of state; its mapping is merged into data."""

    node_types: ClassVar[frozenset[NodeType]] = frozenset({NodeType.EVAL})
    default_error_kind = StepErrorKind.EVAL_FAILED

    async def run(self, step_id: str, node: NodeDefinition, state: WorkflowState) -> StepOutput:
        if not isinstance(node, EvalNode):
            raise TypeError(f"Not an eval node: {type(node).__name__}")
        updates = node.fn(state.snapshot())
        if updates is None:
            updates = {}
        if not isinstance(updates, Mapping):
            raise StepExecutionError(
                f"Eval function returned {type(updates).__name__}, expected a mapping",
                kind=StepErrorKind.EVAL_FAILED,
            )
        return StepOutput(output=dict(updates))

    def apply(self, node: NodeDefinition, result: StepResult, state: WorkflowState) -> None:
        updates = dict(result.output or {})
        state.merge_data(updates)
        key = getattr(node, "result_key", "lastEvalResult")
        state.merge_data(
            {key: {"success": True, "updatedKeys": sorted(updates), "duration": result.duration}}
        )
