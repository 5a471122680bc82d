"""Step executors, one per family of node kinds."""

from atomic_workflow.workflow.steps.base import StepExecutor, StepOutput
from atomic_workflow.workflow.steps.code_step import CodeStepExecutor, HandlerContext, HandlerRegistry
from atomic_workflow.workflow.steps.command_step import CommandStepExecutor
from atomic_workflow.workflow.steps.eval_step import EvalStepExecutor
from atomic_workflow.workflow.steps.llm_step import LlmStepExecutor
from atomic_workflow.workflow.steps.nested_step import NestedWorkflowStepExecutor

__all__ = [
    "CodeStepExecutor",
    "CommandStepExecutor",
    "EvalStepExecutor",
    "HandlerContext",
    "HandlerRegistry",
    "LlmStepExecutor",
    "NestedWorkflowStepExecutor",
    "StepExecutor",
    "StepOutput",
]
