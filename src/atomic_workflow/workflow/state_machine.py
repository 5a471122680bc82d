"""Explicit lifecycles for runs, decisions and ambiguities.

Each lifecycle is a closed set of states plus a table of allowed moves.
Illegal moves fail loudly.
"""

from __future__ import annotations

from enum import Enum
from typing import TypeVar

from atomic_workflow.core.errors import IllegalTransitionError


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING_USER = "waiting_user"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


# The engine never self-resumes from WAITING_USER or PAUSED; those moves back to
# RUNNING are only made on an external resume. The moves to FAILED from the
# halted states exist for cancellation.
ALLOWED_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.RUNNING: {
        RunStatus.WAITING_USER,
        RunStatus.PAUSED,
        RunStatus.COMPLETED,
        RunStatus.FAILED,
    },
    RunStatus.WAITING_USER: {RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.PAUSED: {RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.COMPLETED: set(),
    RunStatus.FAILED: set(),
}

TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED})
ACTIVE_STATUSES = frozenset({RunStatus.RUNNING, RunStatus.WAITING_USER, RunStatus.PAUSED})


class DecisionLifecycle(str, Enum):
    ACTIVE = "active"
    UNDONE = "undone"


DECISION_TRANSITIONS: dict[DecisionLifecycle, set[DecisionLifecycle]] = {
    DecisionLifecycle.ACTIVE: {DecisionLifecycle.UNDONE},
    DecisionLifecycle.UNDONE: set(),
}


class AmbiguityStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    DEFERRED = "deferred"


AMBIGUITY_TRANSITIONS: dict[AmbiguityStatus, set[AmbiguityStatus]] = {
    AmbiguityStatus.PENDING: {AmbiguityStatus.RESOLVED, AmbiguityStatus.DEFERRED},
    AmbiguityStatus.RESOLVED: set(),
    AmbiguityStatus.DEFERRED: set(),
}

_S = TypeVar("_S", bound=Enum)


def _checked(table: dict[_S, set[_S]], current: _S, to: _S, what: str) -> _S:
    allowed = table.get(current, set())
    if to not in allowed:
        raise IllegalTransitionError(f"Illegal {what} transition: {current.value} -> {to.value}")
    return to


def transition(*, current: RunStatus, to: RunStatus) -> RunStatus:
    return _checked(ALLOWED_TRANSITIONS, current, to, "run status")


def transition_decision(*, current: DecisionLifecycle, to: DecisionLifecycle) -> DecisionLifecycle:
    return _checked(DECISION_TRANSITIONS, current, to, "decision")


def transition_ambiguity(*, current: AmbiguityStatus, to: AmbiguityStatus) -> AmbiguityStatus:
    return _checked(AMBIGUITY_TRANSITIONS, current, to, "ambiguity")
