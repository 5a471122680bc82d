"""Unit tests for the explicit run, decision and ambiguity lifecycles.

These tests assert that illegal transitions fail loudly and that the wire
shape of the persisted records stays camelCase.
"""

from __future__ import annotations

import pytest

from atomic_workflow.core.errors import IllegalTransitionError
from atomic_workflow.workflow.models import Ambiguity, Decision, IllegalUndo, WorkflowState
from atomic_workflow.workflow.state_machine import (
    AmbiguityStatus,
    DecisionLifecycle,
    RunStatus,
    transition,
)


def _state() -> WorkflowState:
    return WorkflowState(session_id="s1", project_id="p1", workflow_id="wf", current_node="a")


def test_transition_rejects_illegal_transitions() -> None:
    with pytest.raises(IllegalTransitionError):
        transition(current=RunStatus.COMPLETED, to=RunStatus.RUNNING)
    with pytest.raises(IllegalTransitionError):
        transition(current=RunStatus.PENDING, to=RunStatus.WAITING_USER)

    assert transition(current=RunStatus.WAITING_USER, to=RunStatus.RUNNING) is RunStatus.RUNNING


def test_failed_is_terminal() -> None:
    state = _state()
    state.move_to(RunStatus.RUNNING)
    state.move_to(RunStatus.FAILED)

    for target in RunStatus:
        with pytest.raises(IllegalTransitionError):
            state.move_to(target)


def test_move_to_stamps_timestamps() -> None:
    state = _state()
    assert state.paused_at is None

    state.move_to(RunStatus.RUNNING)
    state.move_to(RunStatus.PAUSED)
    assert state.paused_at is not None

    state.move_to(RunStatus.RUNNING)
    state.move_to(RunStatus.COMPLETED)
    assert state.completed_at is not None


def test_state_wire_shape_is_camel_case() -> None:
    state = _state()
    state.answers["q1"] = "yes"

    wire = state.to_json()

    assert wire["sessionId"] == "s1"
    assert wire["currentNode"] == "a"
    assert wire["stepHistory"] == []
    assert wire["skippedQuestions"] == []
    assert wire["status"] == "pending"

    restored = WorkflowState.from_json(wire)
    assert restored.answers == {"q1": "yes"}
    assert restored.current_node == "a"


def test_state_accepts_legacy_current_step_key() -> None:
    restored = WorkflowState.from_json(
        {"sessionId": "s1", "projectId": "p1", "workflowId": "wf", "currentStepId": "b"}
    )

    assert restored.current_node == "b"


def test_snapshot_does_not_alias_live_state() -> None:
    state = _state()
    state.data["nested"] = {"x": 1}

    snap = state.snapshot()
    snap.data["nested"]["x"] = 2

    assert state.data["nested"]["x"] == 1


def test_decision_undo_is_one_way() -> None:
    decision = Decision(id="d1", project_id="p1", session_id="s1", question_id="q", question_text="Q?")
    assert decision.lifecycle is DecisionLifecycle.ACTIVE

    undone = decision.mark_undone(by="alice")
    assert undone.lifecycle is DecisionLifecycle.UNDONE
    assert undone.undone_by == "alice"
    assert decision.undone_at is None

    with pytest.raises(IllegalTransitionError):
        undone.mark_undone(by="bob")


def test_decision_marked_not_undoable_rejects_undo() -> None:
    decision = Decision(
        id="d1", project_id="p1", session_id="s1", question_id="q", question_text="Q?", can_undo=False
    )

    with pytest.raises(IllegalUndo):
        decision.mark_undone(by=None)


def test_ambiguity_resolution_is_final() -> None:
    ambiguity = Ambiguity(id="a1", feature_id="f1", type="vague_language", text="fast", context="", question="?")

    ambiguity.move_to(AmbiguityStatus.RESOLVED)

    with pytest.raises(IllegalTransitionError):
        ambiguity.move_to(AmbiguityStatus.DEFERRED)
