"""Core package initialization."""

from atomic_workflow.core.config import ExecutionPolicy, WorkflowSettings
from atomic_workflow.core.errors import (
    ConfigValidationError,
    IllegalTransitionError,
    SessionNotFoundError,
    StepErrorKind,
    StepExecutionError,
    TransitionError,
    WorkflowError,
)

__all__ = [
    "ConfigValidationError",
    "ExecutionPolicy",
    "IllegalTransitionError",
    "SessionNotFoundError",
    "StepErrorKind",
    "StepExecutionError",
    "TransitionError",
    "WorkflowError",
    "WorkflowSettings",
]
