"""Unit tests for transition resolution."""

from __future__ import annotations

import pytest

from atomic_workflow.core.errors import TransitionError
from atomic_workflow.workflow.loader import resolve_transition
from atomic_workflow.workflow.models import WorkflowState
from atomic_workflow.workflow.nodes import END

VALID = ("a", "b", END)


def test_static_transition(state: WorkflowState) -> None:
    assert resolve_transition("b", state, VALID, "a") == "b"


def test_function_transition_sees_state(state: WorkflowState) -> None:
    state.data["approved"] = True

    target = resolve_transition(lambda s: END if s.data.get("approved") else "a", state, VALID, "b")

    assert target == END


def test_function_returning_undeclared_name_fails(state: WorkflowState) -> None:
    with pytest.raises(TransitionError) as excinfo:
        resolve_transition(lambda s: "z", state, VALID, "a")

    err = excinfo.value
    assert err.node == "a"
    assert err.target == "z"
    assert err.valid_targets == ["a", "b", END]
    assert str(err) == 'Node "a" next() returned invalid target "z". Valid targets are: a, b, END'


def test_function_that_raises_fails_without_target(state: WorkflowState) -> None:
    def broken(_state: WorkflowState) -> str:
        raise RuntimeError("boom")

    with pytest.raises(TransitionError) as excinfo:
        resolve_transition(broken, state, VALID, "a")

    assert excinfo.value.target is None
    assert "next() function threw an error: boom" in str(excinfo.value)


def test_function_returning_non_string_fails(state: WorkflowState) -> None:
    with pytest.raises(TransitionError) as excinfo:
        resolve_transition(lambda s: None, state, VALID, "a")  # type: ignore[arg-type,return-value]

    assert "expected string" in str(excinfo.value)


def test_static_target_is_rechecked(state: WorkflowState) -> None:
    with pytest.raises(TransitionError):
        resolve_transition("c", state, VALID, "a")
