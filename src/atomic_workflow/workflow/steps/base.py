"""Shared step executor contract.

Every executor returns a `StepResult`. Failures inside `run()` never escape
`execute()`: they become `StepResult(status="failed")` with an error kind.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar

from atomic_workflow.core.errors import StepErrorKind, StepExecutionError
from atomic_workflow.workflow.models import StepResult, WorkflowState
from atomic_workflow.workflow.nodes import NodeDefinition, NodeType

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StepOutput:
    output: dict[str, Any]
    tokens_used: int | None = None


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class StepExecutor(ABC):
    """Runs one family of node kinds."""

    node_types: ClassVar[frozenset[NodeType]]
    # Kind reported for exceptions that are not StepExecutionError.
    default_error_kind: ClassVar[StepErrorKind] = StepErrorKind.HANDLER_FAILED

    # Optional outer bound on run(); None means unbounded.
    deadline_seconds: float | None = None

    @abstractmethod
    async def run(self, step_id: str, node: NodeDefinition, state: WorkflowState) -> StepOutput:
        """Execute the node. May raise; `execute()` converts failures."""

    def apply(self, node: NodeDefinition, result: StepResult, state: WorkflowState) -> None:
        """Fold a completed step's output into run data. Default: shallow merge."""
        state.merge_data(dict(result.output or {}))

    async def execute(self, step_id: str, node: NodeDefinition, state: WorkflowState) -> StepResult:
        started = time.monotonic()
        try:
            if self.deadline_seconds is None:
                out = await self.run(step_id, node, state)
            else:
                try:
                    out = await asyncio.wait_for(self.run(step_id, node, state), self.deadline_seconds)
                except TimeoutError as e:
                    raise StepExecutionError(
                        f"Step exceeded deadline of {self.deadline_seconds}s",
                        kind=StepErrorKind.DEADLINE_EXCEEDED,
                    ) from e
        except StepExecutionError as e:
            logger.warning(
                "Step failed",
                extra={"step_id": step_id, "error_kind": e.kind.value, "error": str(e)},
            )
            return StepResult(
                step_id=step_id,
                status="failed",
                error=str(e),
                error_kind=e.kind.value,
                duration=_elapsed_ms(started),
            )
        except Exception as e:
            logger.warning(
                "Step raised",
                extra={"step_id": step_id, "error_kind": self.default_error_kind.value},
                exc_info=True,
            )
            return StepResult(
                step_id=step_id,
                status="failed",
                error=str(e) or type(e).__name__,
                error_kind=self.default_error_kind.value,
                duration=_elapsed_ms(started),
            )

        return StepResult(
            step_id=step_id,
            status="completed",
            output=out.output,
            duration=_elapsed_ms(started),
            tokens_used=out.tokens_used,
        )
