"""Persisted records: run state, step results, decisions and ambiguities.

Field names are snake_case in Python and camelCase on the wire
(`to_json()` / `from_json()`); the wire shapes are what checkpoint and
decision stores persist.
"""

from __future__ import annotations

import copy
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from atomic_workflow.core.errors import IllegalTransitionError
from atomic_workflow.workflow.state_machine import (
    AmbiguityStatus,
    DecisionLifecycle,
    RunStatus,
    transition,
    transition_ambiguity,
    transition_decision,
)

Phase = Literal["cpo", "clarify", "cto"]
Severity = Literal["low", "medium", "high"]
ClarifyStatus = Literal["scanning", "presenting", "complete"]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_json(cls, obj: dict[str, Any]):  # type: ignore[no-untyped-def]
        return cls.model_validate(obj)


class StepResult(_WireModel):
    """Uniform result of one step executor invocation. Immutable once recorded."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    step_id: str
    status: Literal["completed", "failed"]
    output: dict[str, Any] | None = None
    error: str | None = None
    error_kind: str | None = None
    duration: int = Field(default=0, description="Milliseconds")
    tokens_used: int | None = None

    @property
    def ok(self) -> bool:
        return self.status == "completed"


class Ambiguity(_WireModel):
    id: str
    feature_id: str
    type: str
    severity: Severity = "medium"
    text: str
    context: str
    question: str
    options: list[str] | None = None
    status: AmbiguityStatus = AmbiguityStatus.PENDING
    resolution: str | None = None

    def move_to(self, status: AmbiguityStatus) -> None:
        self.status = transition_ambiguity(current=self.status, to=status)


class ClarifyState(_WireModel):
    ambiguities: list[Ambiguity] = Field(default_factory=list)
    current_index: int = 0
    resolved_count: int = 0
    deferred_count: int = 0
    status: ClarifyStatus = "scanning"


class WorkflowState(_WireModel):
    """The mutable record of one run. One writer at a time."""

    session_id: str
    project_id: str
    workflow_id: str
    current_node: str = Field(
        default="",
        validation_alias=AliasChoices("currentNode", "currentStepId", "current_node"),
        serialization_alias="currentNode",
    )
    status: RunStatus = RunStatus.PENDING

    current_topic_index: int = 0
    current_question_index: int = 0
    topic_question_counts: dict[str, int] = Field(default_factory=dict)

    answers: dict[str, Any] = Field(default_factory=dict)
    skipped_questions: list[str] = Field(default_factory=list)

    data: dict[str, Any] = Field(default_factory=dict)
    clarify_state: ClarifyState | None = None

    step_history: list[StepResult] = Field(default_factory=list)
    checkpoint: str = ""

    started_at: datetime = Field(default_factory=utc_now)
    last_activity_at: datetime = Field(default_factory=utc_now)
    paused_at: datetime | None = None
    completed_at: datetime | None = None

    last_error: str | None = None
    retry_count: int = 0

    def move_to(self, status: RunStatus) -> None:
        """Apply a lifecycle move, stamping the matching timestamp."""
        self.status = transition(current=self.status, to=status)
        now = utc_now()
        self.last_activity_at = now
        if status is RunStatus.PAUSED:
            self.paused_at = now
        elif status is RunStatus.COMPLETED:
            self.completed_at = now

    def record_step(self, result: StepResult) -> None:
        self.step_history.append(result)
        self.last_activity_at = utc_now()

    def is_answered(self, question_id: str) -> bool:
        return question_id in self.answers or question_id in self.skipped_questions

    def skip(self, question_id: str) -> None:
        if question_id not in self.skipped_questions:
            self.skipped_questions.append(question_id)

    def snapshot(self) -> WorkflowState:
        """Deep copy for handing to user callables without aliasing live state."""
        return self.model_copy(deep=True)

    def merge_data(self, update: dict[str, Any]) -> None:
        self.data.update(copy.deepcopy(update))


class Decision(_WireModel):
    """One recorded answer. Only the undo fields ever change after creation."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    project_id: str
    session_id: str
    question_id: str
    question_text: str
    answer_given: Any = None
    category: str = "general"
    phase: Phase = "cpo"
    feature_id: str | None = None
    alternatives: list[Any] | None = None
    batch_id: str | None = None
    cascade_group: str | None = None
    can_undo: bool = True
    undone_at: datetime | None = None
    undone_by: str | None = None
    ai_recommendation: Any = None
    recommendation_followed: bool | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def lifecycle(self) -> DecisionLifecycle:
        return DecisionLifecycle.UNDONE if self.undone_at is not None else DecisionLifecycle.ACTIVE

    def mark_undone(self, *, by: str | None, at: datetime | None = None) -> Decision:
        if not self.can_undo:
            raise IllegalUndo(self.id)
        transition_decision(current=self.lifecycle, to=DecisionLifecycle.UNDONE)
        at = at or utc_now()
        return self.model_copy(update={"undone_at": at, "undone_by": by, "updated_at": at})


class IllegalUndo(IllegalTransitionError):
    def __init__(self, decision_id: str) -> None:
        super().__init__(f"Decision cannot be undone: {decision_id}")
        self.decision_id = decision_id
