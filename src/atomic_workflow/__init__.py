"""Atomic Workflow.

A declarative multi-step workflow engine:
- workflows are graphs of typed nodes (model calls, shell commands,
  code handlers, nested workflows) joined by static or computed transitions
- every run is checkpointed after each step and can be paused, resumed
  and recovered
- user answers are kept in an append-only decision journal with soft undo
"""

__version__ = "0.1.0"

from atomic_workflow.core.config import ExecutionPolicy, WorkflowSettings
from atomic_workflow.workflow.engine import WorkflowEngine
from atomic_workflow.workflow.loader import define_workflow, load_config, load_registry
from atomic_workflow.workflow.nodes import (
    END,
    AgentNode,
    CodeNode,
    CommandNode,
    DecisionCapture,
    DynamicAgentNode,
    DynamicCommandNode,
    EvalNode,
    SlashCommandNode,
    WorkflowNode,
)

__all__ = [
    "__version__",
    "END",
    "AgentNode",
    "CodeNode",
    "CommandNode",
    "DecisionCapture",
    "DynamicAgentNode",
    "DynamicCommandNode",
    "EvalNode",
    "ExecutionPolicy",
    "SlashCommandNode",
    "WorkflowEngine",
    "WorkflowNode",
    "WorkflowSettings",
    "define_workflow",
    "load_config",
    "load_registry",
]
