"""Shell command steps (command and dynamic-command nodes)."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Mapping
from typing import Any, ClassVar

from atomic_workflow.core.config import ExecutionPolicy
from atomic_workflow.core.errors import StepErrorKind, StepExecutionError
from atomic_workflow.workflow.models import StepResult, WorkflowState
from atomic_workflow.workflow.nodes import (
    SHELL_NODE_TYPES,
    CommandNode,
    DynamicCommandNode,
    NodeDefinition,
)
from atomic_workflow.workflow.steps.base import StepExecutor, StepOutput

logger = logging.getLogger(__name__)


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def run_shell(
    command: str,
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout_ms: int,
) -> dict[str, Any]:
    """Run `command` through the shell and capture its output.

    `env` is layered over the current process environment. On timeout the
    whole process group is killed and `timedOut` is set. Cancellation kills
    the group too.
    """
    started = time.monotonic()
    proc = await asyncio.create_subprocess_shell(
        command,
        cwd=cwd,
        env={**os.environ, **env} if env else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    timed_out = False
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout_ms / 1000)
    except TimeoutError:
        timed_out = True
        _kill_group(proc)
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        _kill_group(proc)
        raise

    exit_code = proc.returncode if proc.returncode is not None else -1
    return {
        "exitCode": exit_code,
        "stdout": stdout.decode("utf-8", errors="replace"),
        "stderr": stderr.decode("utf-8", errors="replace"),
        "success": exit_code == 0 and not timed_out,
        "timedOut": timed_out,
        "duration": int((time.monotonic() - started) * 1000),
    }


class CommandStepExecutor(StepExecutor):
    node_types: ClassVar[frozenset] = SHELL_NODE_TYPES
    default_error_kind = StepErrorKind.COMMAND_FAILED

    def __init__(self, policy: ExecutionPolicy) -> None:
        self.policy = policy

    async def run(self, step_id: str, node: NodeDefinition, state: WorkflowState) -> StepOutput:
        if not isinstance(node, CommandNode | DynamicCommandNode):
            raise TypeError(f"Not a command node: {type(node).__name__}")
        if not isinstance(node.command, str) or not node.command.strip():
            raise StepExecutionError("Command resolved to an empty string", kind=StepErrorKind.COMMAND_FAILED)

        timeout_ms = node.timeout or self.policy.command_timeout_ms
        logger.info("Running command", extra={"step_id": step_id, "command": node.command, "cwd": node.cwd})
        result = await run_shell(node.command, cwd=node.cwd, env=node.env, timeout_ms=timeout_ms)

        if not result["success"] and node.throw_on_error:
            if result["timedOut"]:
                message = f"Command timed out after {timeout_ms}ms: {node.command}"
            else:
                detail = result["stderr"].strip() or result["stdout"].strip()
                message = f"Command failed with exit code {result['exitCode']}: {node.command}"
                if detail:
                    message = f"{message}\n{detail}"
            raise StepExecutionError(message, kind=StepErrorKind.COMMAND_FAILED)
        return StepOutput(output=result)

    def apply(self, node: NodeDefinition, result: StepResult, state: WorkflowState) -> None:
        key = getattr(node, "result_key", "lastCommandResult")
        state.merge_data({key: dict(result.output or {})})
