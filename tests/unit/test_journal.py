"""Unit tests for the decision journal and undo cascade."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from atomic_workflow.core.errors import IllegalTransitionError
from atomic_workflow.state.decisions import DecisionFilters, InMemoryDecisionStore
from atomic_workflow.workflow.journal import (
    DecisionJournal,
    categorize_question,
    phase_for_workflow,
    recommendation_followed,
)
from atomic_workflow.workflow.models import Decision, WorkflowState

T0 = datetime(2025, 1, 1, tzinfo=UTC)


def _decision(decision_id: str, minutes: int, *, group: str | None = "db", **fields: object) -> Decision:
    created = T0 + timedelta(minutes=minutes)
    values: dict[str, object] = {
        "id": decision_id,
        "project_id": "p1",
        "session_id": "s1",
        "question_id": f"q-{decision_id}",
        "question_text": "Which database?",
        "answer_given": f"answer-{decision_id}",
        "cascade_group": group,
        "created_at": created,
        "updated_at": created,
    }
    values.update(fields)
    return Decision(**values)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("question", "category"),
    [
        ("Which database should we use?", "data_model"),
        ("Should the API be REST?", "api_design"),
        ("How do users sign in? (authentication)", "user_experience"),
        ("Do we need a cache?", "performance"),
        ("What is the deadline?", "general"),
    ],
)
def test_categorize_question(question: str, category: str) -> None:
    assert categorize_question(question) == category


def test_phase_for_workflow() -> None:
    assert phase_for_workflow("cto-phase") == "cto"
    assert phase_for_workflow("clarify-phase") == "clarify"
    assert phase_for_workflow("something-else") == "cpo"


def test_recommendation_followed() -> None:
    recommendation = {"recommendedOptionId": "b", "confidence": "high"}

    assert recommendation_followed("b", recommendation) is True
    assert recommendation_followed("a", recommendation) is False
    assert recommendation_followed("a", None) is None


def test_log_answer_records_decision(journal: DecisionJournal, state: WorkflowState) -> None:
    decision = journal.log_answer(
        state,
        question_id="db",
        question_text="Which database schema fits best?",
        answer="b",
        recommendation={"recommendedOptionId": "b", "reasoning": "Mature"},
        cascade_group="storage",
    )

    assert decision.id.startswith("dec_")
    assert decision.category == "data_model"
    assert decision.phase == "cpo"
    assert decision.recommendation_followed is True
    assert decision.ai_recommendation == {"optionId": "b", "confidence": "medium", "reasoning": "Mature"}
    assert journal.get_decision(decision.id) == decision


def test_undo_is_non_destructive(journal: DecisionJournal, decision_store: InMemoryDecisionStore) -> None:
    original = _decision("d1", 1)
    decision_store.record(original)

    [undone] = journal.undo_decisions(["d1"], by="alice")

    assert undone.undone_by == "alice"
    assert undone.undone_at is not None
    stored = journal.get_decision("d1")
    assert stored is not None
    assert stored.answer_given == "answer-d1"
    ignored = {"undone_at", "undone_by", "updated_at"}
    assert stored.model_dump(exclude=ignored) == original.model_dump(exclude=ignored)


def test_undo_twice_fails(journal: DecisionJournal, decision_store: InMemoryDecisionStore) -> None:
    decision_store.record(_decision("d1", 1))
    journal.undo_decisions(["d1"])

    with pytest.raises(IllegalTransitionError):
        journal.undo_decisions(["d1"])


def test_preview_undo_lists_later_active_decisions_in_group(
    journal: DecisionJournal, decision_store: InMemoryDecisionStore
) -> None:
    decision_store.record(_decision("before", 0))
    decision_store.record(_decision("target", 1))
    decision_store.record(_decision("later", 2))
    decision_store.record(_decision("latest", 3))
    decision_store.record(_decision("locked", 4, can_undo=False))
    decision_store.record(_decision("other-group", 5, group="ui"))
    decision_store.record(_decision("gone", 6))
    decision_store.mark_undone(["gone"])

    preview = journal.preview_undo("target")

    assert preview.target.id == "target"
    assert [d.id for d in preview.cascade] == ["later", "latest"]
    assert preview.decision_ids == ["target", "later", "latest"]


def test_preview_undo_without_group_has_no_cascade(
    journal: DecisionJournal, decision_store: InMemoryDecisionStore
) -> None:
    decision_store.record(_decision("solo", 1, group=None))
    decision_store.record(_decision("later", 2, group=None))

    assert journal.preview_undo("solo").cascade == []


def test_preview_undo_unknown_decision(journal: DecisionJournal) -> None:
    with pytest.raises(KeyError):
        journal.preview_undo("missing")


def test_undo_with_cascade(journal: DecisionJournal, decision_store: InMemoryDecisionStore) -> None:
    decision_store.record(_decision("target", 1))
    decision_store.record(_decision("later", 2))
    decision_store.record(_decision("untouched", 0))

    undone = journal.undo_with_cascade("target", by="bob")

    assert sorted(d.id for d in undone) == ["later", "target"]
    still_active = journal.get_decisions("p1", DecisionFilters(undone=False))
    assert [d.id for d in still_active] == ["untouched"]
