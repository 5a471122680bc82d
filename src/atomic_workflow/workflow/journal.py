"""Decision journal and undo cascade.

Every human-visible answer becomes an immutable `Decision`. Undo is a soft
mark (`undone_at` / `undone_by`); nothing is deleted and step history is
never rewritten.

Cascade discovery is a read: `preview_undo()` lists the other active,
undoable decisions in the same cascade group that were made after the
target. Committing is one store call over an exact id set.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from atomic_workflow.state.decisions import DecisionFilters, DecisionStore
from atomic_workflow.workflow.models import Decision, Phase, WorkflowState, utc_now

logger = logging.getLogger(__name__)

_PHASES: frozenset[str] = frozenset({"cpo", "clarify", "cto"})

# Checked in order; first match wins.
_CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("product_scope", ("feature", "capability")),
    ("user_experience", ("user", "interface", "ui")),
    ("data_model", ("database", "schema", "entity")),
    ("api_design", ("api", "endpoint", "rest", "graphql")),
    ("technology", ("technology", "stack", "framework")),
    ("security", ("security", "authentication", "authorization")),
    ("performance", ("performance", "speed", "cache")),
    ("integration", ("integration", "third-party", "external")),
)


def categorize_question(question_text: str) -> str:
    text = question_text.lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(k in text for k in keywords):
            return category
    return "general"


def phase_for_workflow(workflow_id: str) -> Phase:
    """`cpo-phase` -> `cpo`; unknown workflows count as `cpo`."""
    phase = workflow_id.removesuffix("-phase")
    return phase if phase in _PHASES else "cpo"  # type: ignore[return-value]


def new_decision_id() -> str:
    return f"dec_{secrets.token_hex(8)}"


def recommendation_followed(answer: Any, recommendation: Any) -> bool | None:
    if not isinstance(recommendation, Mapping):
        return None
    return answer == recommendation.get("recommendedOptionId")


def _recommendation_record(recommendation: Any) -> dict[str, Any] | None:
    if not isinstance(recommendation, Mapping):
        return None
    return {
        "optionId": recommendation.get("recommendedOptionId"),
        "confidence": recommendation.get("confidence") or "medium",
        "reasoning": recommendation.get("reasoning") or "",
    }


@dataclass(frozen=True, slots=True)
class UndoPreview:
    target: Decision
    # Same cascade group, created after the target, still active and undoable.
    cascade: list[Decision]

    @property
    def decision_ids(self) -> list[str]:
        return [self.target.id, *(d.id for d in self.cascade)]


class DecisionJournal:
    """Records decisions and applies soft undo through a `DecisionStore`."""

    def __init__(self, store: DecisionStore) -> None:
        self.store = store

    def record_decision(self, decision: Decision) -> Decision:
        self.store.record(decision)
        logger.info(
            "Decision recorded",
            extra={
                "decision_id": decision.id,
                "project_id": decision.project_id,
                "question_id": decision.question_id,
                "cascade_group": decision.cascade_group,
            },
        )
        return decision

    def log_answer(
        self,
        state: WorkflowState,
        *,
        question_id: str,
        question_text: str,
        answer: Any,
        recommendation: Any = None,
        category: str | None = None,
        cascade_group: str | None = None,
        feature_id: str | None = None,
        alternatives: list[Any] | None = None,
    ) -> Decision:
        """Build and record the decision for an answer given during `state`'s run."""
        now = utc_now()
        decision = Decision(
            id=new_decision_id(),
            project_id=state.project_id,
            session_id=state.session_id,
            question_id=question_id,
            question_text=question_text,
            answer_given=answer,
            category=category or categorize_question(question_text),
            phase=phase_for_workflow(state.workflow_id),
            feature_id=feature_id,
            alternatives=alternatives,
            cascade_group=cascade_group,
            ai_recommendation=_recommendation_record(recommendation),
            recommendation_followed=recommendation_followed(answer, recommendation),
            created_at=now,
            updated_at=now,
        )
        return self.record_decision(decision)

    def get_decisions(
        self,
        project_id: str,
        filters: DecisionFilters | None = None,
    ) -> list[Decision]:
        """Decisions for a project matching every given filter, newest first."""
        return self.store.query(project_id, filters)

    def get_decision(self, decision_id: str) -> Decision | None:
        return self.store.get(decision_id)

    def undo_decisions(self, decision_ids: Iterable[str], by: str | None = None) -> list[Decision]:
        """Soft-mark exactly `decision_ids` as undone, all or nothing."""
        ids = list(decision_ids)
        undone = self.store.mark_undone(ids, by)
        logger.info("Decisions undone", extra={"decision_ids": ids, "undone_by": by})
        return undone

    def preview_undo(self, decision_id: str) -> UndoPreview:
        target = self.store.get(decision_id)
        if target is None:
            raise KeyError(decision_id)
        if target.cascade_group is None:
            return UndoPreview(target=target, cascade=[])

        group = self.store.query(
            target.project_id,
            DecisionFilters(cascade_group=target.cascade_group, undone=False),
        )
        cascade = [
            d
            for d in reversed(group)
            if d.id != target.id and d.can_undo and d.created_at > target.created_at
        ]
        return UndoPreview(target=target, cascade=cascade)

    def undo_with_cascade(self, decision_id: str, by: str | None = None) -> list[Decision]:
        """Undo a decision together with everything its preview lists."""
        return self.undo_decisions(self.preview_undo(decision_id).decision_ids, by)
