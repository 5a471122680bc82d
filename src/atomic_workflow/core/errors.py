"""Error taxonomy shared by the loader, the engine and the step executors."""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum


class WorkflowError(Exception):
    """Base class for every error raised by this package."""


class IllegalTransitionError(ValueError):
    pass


class ConfigValidationError(WorkflowError):
    """A workflow definition could not be loaded.

    Always carries the complete list of problems found, never just the first.
    """

    def __init__(self, message: str, errors: Iterable[str], *, source: str = "") -> None:
        self.errors: list[str] = list(errors)
        self.source = source
        self.summary = message
        super().__init__(self._format())

    def _format(self) -> str:
        header = self.summary
        if self.source and self.source not in header:
            header = f"{header} ({self.source})"
        lines = [f"  {i}. {e}" for i, e in enumerate(self.errors, start=1)]
        return "\n".join([header, *lines])


class TransitionError(WorkflowError):
    """A node's transition did not resolve to a declared node or END."""

    def __init__(
        self,
        message: str,
        *,
        node: str,
        target: str | None = None,
        valid_targets: Iterable[str] = (),
    ) -> None:
        super().__init__(message)
        self.node = node
        self.target = target
        self.valid_targets = list(valid_targets)


class StepErrorKind(str, Enum):
    HANDLER_NOT_FOUND = "handler_not_found"
    HANDLER_FAILED = "handler_failed"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    API_ERROR = "api_error"
    MODEL_ERROR = "model_error"
    CHILD_WORKFLOW_FAILED = "child_workflow_failed"
    COMMAND_FAILED = "command_failed"
    EVAL_FAILED = "eval_failed"
    DYNAMIC_RESOLUTION_FAILED = "dynamic_resolution_failed"
    DEADLINE_EXCEEDED = "deadline_exceeded"


class StepExecutionError(WorkflowError):
    """Raised inside a step executor; converted to a failed StepResult at its boundary."""

    def __init__(self, message: str, *, kind: StepErrorKind) -> None:
        super().__init__(message)
        self.kind = kind


class SessionNotFoundError(WorkflowError, KeyError):
    def __init__(self, session_id: str) -> None:
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"No checkpoint found for session: {self.session_id}"


class JournalCorruptedError(WorkflowError):
    """The decision journal file could not be read; nothing will be written over it."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Decision journal {path} is unreadable: {reason}")
        self.path = path
        self.reason = reason
