"""Code steps: run a named in-process handler."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, ClassVar, Union

from atomic_workflow.core.errors import StepErrorKind, StepExecutionError
from atomic_workflow.workflow.models import WorkflowState
from atomic_workflow.workflow.nodes import CodeNode, NodeDefinition, NodeType
from atomic_workflow.workflow.steps.base import StepExecutor, StepOutput

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HandlerContext:
    """What a handler may see besides its input. `state` is the live run state."""

    state: WorkflowState
    step_id: str

    @property
    def session_id(self) -> str:
        return self.state.session_id

    @property
    def project_id(self) -> str:
        return self.state.project_id


HandlerResult = Union[Mapping[str, Any], Awaitable[Mapping[str, Any]]]
Handler = Callable[[dict[str, Any], HandlerContext], HandlerResult]


class HandlerRegistry:
    """Named code-step handlers.

    Build one at startup and inject it into the engine; tests build their own.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(self, name: str, fn: Handler | None = None) -> Any:
        """Register `fn` under `name`. Without `fn`, returns a decorator."""
        if fn is None:

            def decorator(handler: Handler) -> Handler:
                self.register(name, handler)
                return handler

            return decorator
        if name in self._handlers:
            logger.warning("Replacing code handler", extra={"handler": name})
        self._handlers[name] = fn
        return fn

    def resolve(self, name: str) -> Handler | None:
        return self._handlers.get(name)

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers


class CodeStepExecutor(StepExecutor):
    node_types: ClassVar[frozenset[NodeType]] = frozenset({NodeType.CODE})
    default_error_kind = StepErrorKind.HANDLER_FAILED

    def __init__(self, registry: HandlerRegistry, *, deadline_seconds: float | None = None) -> None:
        self.registry = registry
        self.deadline_seconds = deadline_seconds

    async def run(self, step_id: str, node: NodeDefinition, state: WorkflowState) -> StepOutput:
        if not isinstance(node, CodeNode):
            raise TypeError(f"Not a code node: {type(node).__name__}")
        handler = self.registry.resolve(node.handler)
        if handler is None:
            raise StepExecutionError(f"Handler not found: {node.handler}", kind=StepErrorKind.HANDLER_NOT_FOUND)

        # Run data overrides step-declared input on key clashes.
        handler_input = {**(node.input or {}), **state.data}
        ctx = HandlerContext(state=state, step_id=step_id)

        if inspect.iscoroutinefunction(handler):
            result = await handler(handler_input, ctx)
        else:
            result = await asyncio.to_thread(handler, handler_input, ctx)
            if inspect.isawaitable(result):
                result = await result

        if result is None:
            result = {}
        if not isinstance(result, Mapping):
            raise StepExecutionError(
                f"Handler {node.handler} returned {type(result).__name__}, expected a mapping",
                kind=StepErrorKind.HANDLER_FAILED,
            )
        return StepOutput(output=dict(result))
