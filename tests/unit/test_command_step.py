"""Unit tests for shell command steps."""

from __future__ import annotations

import asyncio
from pathlib import Path

from atomic_workflow.core.config import ExecutionPolicy
from atomic_workflow.workflow.models import WorkflowState
from atomic_workflow.workflow.nodes import END, CommandNode, DynamicCommandNode
from atomic_workflow.workflow.steps.command_step import CommandStepExecutor


def test_successful_command(state: WorkflowState, policy: ExecutionPolicy) -> None:
    executor = CommandStepExecutor(policy)
    node = CommandNode(command="echo hello", next=END)

    result = asyncio.run(executor.execute("echo", node, state))

    assert result.ok
    assert result.output is not None
    assert result.output["exitCode"] == 0
    assert result.output["stdout"].strip() == "hello"
    assert result.output["success"] is True

    executor.apply(node, result, state)
    assert state.data["lastCommandResult"]["stdout"].strip() == "hello"


def test_non_zero_exit_fails_step(state: WorkflowState, policy: ExecutionPolicy) -> None:
    node = CommandNode(command="echo broken >&2; exit 3", next=END)

    result = asyncio.run(CommandStepExecutor(policy).execute("fail", node, state))

    assert result.error_kind == "command_failed"
    assert result.error == "Command failed with exit code 3: echo broken >&2; exit 3\nbroken"


def test_throw_on_error_false_keeps_going(state: WorkflowState, policy: ExecutionPolicy) -> None:
    node = CommandNode(command="exit 1", throw_on_error=False, next=END)

    result = asyncio.run(CommandStepExecutor(policy).execute("soft", node, state))

    assert result.ok
    assert result.output is not None
    assert result.output["success"] is False
    assert result.output["exitCode"] == 1


def test_timeout_kills_command(state: WorkflowState, policy: ExecutionPolicy) -> None:
    node = CommandNode(command="sleep 5", timeout=100, next=END)

    result = asyncio.run(CommandStepExecutor(policy).execute("slow", node, state))

    assert result.error_kind == "command_failed"
    assert result.error == "Command timed out after 100ms: sleep 5"


def test_cwd_and_env(state: WorkflowState, policy: ExecutionPolicy, tmp_path: Path) -> None:
    node = CommandNode(command='echo "$GREETING" && pwd', cwd=str(tmp_path), env={"GREETING": "hi"}, next=END)

    result = asyncio.run(CommandStepExecutor(policy).execute("env", node, state))

    assert result.output is not None
    lines = result.output["stdout"].splitlines()
    assert lines[0] == "hi"
    assert Path(lines[1]).resolve() == tmp_path.resolve()


def test_dynamic_command_resolves_from_state(state: WorkflowState, policy: ExecutionPolicy) -> None:
    state.data["name"] = "world"
    node = DynamicCommandNode(command=lambda s: f"echo {s.data['name']}", next=END)

    result = asyncio.run(CommandStepExecutor(policy).execute("dyn", node.resolve(state.snapshot()), state))

    assert result.output is not None
    assert result.output["stdout"].strip() == "world"


def test_empty_command_fails(state: WorkflowState, policy: ExecutionPolicy) -> None:
    node = DynamicCommandNode(command=lambda s: "  ", next=END)

    result = asyncio.run(CommandStepExecutor(policy).execute("dyn", node.resolve(state.snapshot()), state))

    assert result.error == "Command resolved to an empty string"
