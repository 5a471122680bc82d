"""Clarify sub-machine: detected ambiguities and their resolution.

Per run, `clarify_state` holds the ambiguity list and a status of
`scanning` -> `presenting` -> `complete`. The sub-machine is `complete`
exactly when no ambiguity is `pending`; an empty list is complete at once.

The operations are also exposed as code-step handlers, see
`register_clarify_handlers`.
"""

from __future__ import annotations

import re
import secrets
from collections.abc import Iterable, Mapping
from typing import Any

from atomic_workflow.workflow.models import Ambiguity, ClarifyState, WorkflowState, utc_now
from atomic_workflow.workflow.state_machine import AmbiguityStatus
from atomic_workflow.workflow.steps.code_step import HandlerContext, HandlerRegistry

DEFERRED_RESOLUTION = "[TBD - Deferred to CTO phase]"
DEFERRED_DATA_KEY = "deferredAmbiguities"

_SEVERITY_ORDER = {"high": 0, "medium": 1, "low": 2}

_VAGUE = re.compile(r"\b(fast|slow|easy|simple|secure|better|good|bad|nice|clean)\b", re.IGNORECASE)
_UNCERTAIN = re.compile(r"\b(maybe|possibly|might|could|should)\b", re.IGNORECASE)


class ClarifyError(LookupError):
    pass


def new_ambiguity_id() -> str:
    return f"amb_{secrets.token_hex(6)}"


def _require(state: WorkflowState) -> ClarifyState:
    if state.clarify_state is None:
        raise ClarifyError("Clarify state not initialized")
    return state.clarify_state


def _find(clarify: ClarifyState, ambiguity_id: str) -> Ambiguity:
    for ambiguity in clarify.ambiguities:
        if ambiguity.id == ambiguity_id:
            return ambiguity
    raise ClarifyError(f"Ambiguity not found: {ambiguity_id}")


def refresh_status(clarify: ClarifyState) -> None:
    pending = [i for i, a in enumerate(clarify.ambiguities) if a.status is AmbiguityStatus.PENDING]
    if pending:
        clarify.status = "presenting"
        clarify.current_index = pending[0]
    else:
        clarify.status = "complete"
        clarify.current_index = len(clarify.ambiguities)


def init_clarify(state: WorkflowState) -> ClarifyState:
    state.clarify_state = ClarifyState()
    return state.clarify_state


def load_ambiguities(state: WorkflowState, ambiguities: Iterable[Ambiguity | Mapping[str, Any]]) -> ClarifyState:
    """Replace the list with freshly detected ambiguities, highest severity first."""
    clarify = state.clarify_state or init_clarify(state)
    items = [a if isinstance(a, Ambiguity) else Ambiguity.model_validate(a) for a in ambiguities]
    for item in items:
        item.status = AmbiguityStatus.PENDING
        item.resolution = None
    items.sort(key=lambda a: _SEVERITY_ORDER[a.severity])
    clarify.ambiguities = items
    clarify.resolved_count = 0
    clarify.deferred_count = 0
    refresh_status(clarify)
    return clarify


def resolve_ambiguity(state: WorkflowState, ambiguity_id: str, resolution: str) -> Ambiguity:
    clarify = _require(state)
    ambiguity = _find(clarify, ambiguity_id)
    ambiguity.move_to(AmbiguityStatus.RESOLVED)
    ambiguity.resolution = resolution
    clarify.resolved_count += 1
    refresh_status(clarify)
    return ambiguity


def defer_ambiguity(state: WorkflowState, ambiguity_id: str) -> Ambiguity:
    """Defer to a later phase; the ambiguity is also queued under `deferredAmbiguities`."""
    clarify = _require(state)
    ambiguity = _find(clarify, ambiguity_id)
    ambiguity.move_to(AmbiguityStatus.DEFERRED)
    ambiguity.resolution = DEFERRED_RESOLUTION
    clarify.deferred_count += 1
    deferred = list(state.data.get(DEFERRED_DATA_KEY) or [])
    deferred.append(ambiguity.to_json())
    state.data[DEFERRED_DATA_KEY] = deferred
    refresh_status(clarify)
    return ambiguity


def current_ambiguity(state: WorkflowState) -> Ambiguity | None:
    clarify = _require(state)
    if clarify.status != "presenting":
        return None
    return clarify.ambiguities[clarify.current_index]


def severity_summary(clarify: ClarifyState) -> dict[str, int]:
    counts = {"total": len(clarify.ambiguities), "high": 0, "medium": 0, "low": 0}
    for ambiguity in clarify.ambiguities:
        counts[ambiguity.severity] += 1
    return counts


def clarify_summary(clarify: ClarifyState) -> dict[str, Any]:
    return {
        "phase": "clarify",
        "completedAt": utc_now().isoformat(),
        "totalAmbiguities": len(clarify.ambiguities),
        "resolved": clarify.resolved_count,
        "deferred": clarify.deferred_count,
        "highSeverityResolved": sum(
            1 for a in clarify.ambiguities if a.severity == "high" and a.status is AmbiguityStatus.RESOLVED
        ),
    }


def scan_features(features: Iterable[Mapping[str, Any]]) -> list[Ambiguity]:
    """Heuristic scan of feature descriptions for vague or uncertain language.

    Each feature is a mapping with `id`, `description` and optionally
    `business` holding `userStory` and `acceptanceCriteria`.
    """
    found: list[Ambiguity] = []
    for feature in features:
        feature_id = str(feature.get("id", ""))
        description = feature.get("description") or ""
        business = feature.get("business") or {}

        if description:
            vague = _VAGUE.findall(description)
            if vague:
                terms = ", ".join(vague)
                found.append(
                    Ambiguity(
                        id=new_ambiguity_id(),
                        feature_id=feature_id,
                        type="vague_language",
                        severity="medium",
                        text=terms,
                        context=f'Feature description: "{description}"',
                        question=f"The description contains vague terms ({terms}). Can you be more specific?",
                    )
                )
            uncertain = _UNCERTAIN.findall(description)
            if uncertain:
                terms = ", ".join(uncertain)
                found.append(
                    Ambiguity(
                        id=new_ambiguity_id(),
                        feature_id=feature_id,
                        type="conflict",
                        severity="low",
                        text=terms,
                        context=f'Feature description: "{description}"',
                        question=(
                            f"The description uses uncertain language ({terms}). "
                            "What is the definite requirement?"
                        ),
                    )
                )

        story = business.get("userStory") or ""
        if story:
            vague = _VAGUE.findall(story)
            if vague:
                terms = ", ".join(vague)
                found.append(
                    Ambiguity(
                        id=new_ambiguity_id(),
                        feature_id=feature_id,
                        type="vague_language",
                        severity="high",
                        text=terms,
                        context=f'User story: "{story}"',
                        question=f"The user story contains vague terms ({terms}). Can you quantify or clarify?",
                    )
                )

        criteria = business.get("acceptanceCriteria")
        if criteria is not None and len(criteria) < 2:
            found.append(
                Ambiguity(
                    id=new_ambiguity_id(),
                    feature_id=feature_id,
                    type="missing_edge_case",
                    severity="medium",
                    text="Insufficient acceptance criteria",
                    context=f"Feature has only {len(criteria)} acceptance criteria",
                    question="What edge cases or error scenarios should be handled?",
                    options=[
                        "Add error handling criteria",
                        "Add validation criteria",
                        "Add boundary conditions",
                    ],
                )
            )
    return found


# -- code-step handlers ------------------------------------------------------


def _handle_init(_input: dict[str, Any], ctx: HandlerContext) -> dict[str, Any]:
    clarify = init_clarify(ctx.state)
    return {"initialized": True, "phase": "clarify", "clarifyState": clarify.to_json()}


def _handle_detect(input: dict[str, Any], ctx: HandlerContext) -> dict[str, Any]:
    clarify = load_ambiguities(ctx.state, scan_features(input.get("features") or []))
    return {
        "detectedIssues": [a.to_json() for a in clarify.ambiguities],
        "count": len(clarify.ambiguities),
        "clarifyStatus": clarify.status,
    }


def _handle_present(_input: dict[str, Any], ctx: HandlerContext) -> dict[str, Any]:
    clarify = _require(ctx.state)
    return {"summary": severity_summary(clarify), "ambiguities": [a.to_json() for a in clarify.ambiguities]}


def _ambiguity_id(input: Mapping[str, Any]) -> str:
    ambiguity_id = input.get("ambiguityId")
    if not ambiguity_id:
        current = input.get("currentAmbiguity")
        if isinstance(current, Mapping):
            ambiguity_id = current.get("id")
    if not ambiguity_id:
        raise ClarifyError("Ambiguity id not provided")
    return str(ambiguity_id)


def _handle_resolve(input: dict[str, Any], ctx: HandlerContext) -> dict[str, Any]:
    resolution = input.get("resolution", input.get("userAnswer"))
    if resolution is None:
        raise ClarifyError("Resolution is required")
    ambiguity = resolve_ambiguity(ctx.state, _ambiguity_id(input), str(resolution))
    return {"resolved": True, "ambiguityId": ambiguity.id, "resolution": ambiguity.resolution}


def _handle_defer(input: dict[str, Any], ctx: HandlerContext) -> dict[str, Any]:
    ambiguity = defer_ambiguity(ctx.state, _ambiguity_id(input))
    return {"deferred": True, "ambiguityId": ambiguity.id}


def _handle_summary(_input: dict[str, Any], ctx: HandlerContext) -> dict[str, Any]:
    return {"summary": clarify_summary(_require(ctx.state))}


def register_clarify_handlers(registry: HandlerRegistry) -> HandlerRegistry:
    registry.register("init_clarify", _handle_init)
    registry.register("detect_ambiguities", _handle_detect)
    registry.register("present_ambiguity_summary", _handle_present)
    registry.register("resolve_ambiguity", _handle_resolve)
    registry.register("defer_ambiguity", _handle_defer)
    registry.register("generate_clarify_summary", _handle_summary)
    return registry
