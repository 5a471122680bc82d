"""Decision store collaborators.

Decisions are never deleted. The only mutation a store performs is the
soft-undo mark, applied to an exact id set in one locked operation: either
every requested decision is marked or none is.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from atomic_workflow.core.errors import JournalCorruptedError
from atomic_workflow.workflow.models import Decision, Phase, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DecisionFilters:
    """Query filters. Every set field must match (logical AND)."""

    feature_id: str | None = None
    phase: Phase | None = None
    category: str | None = None
    session_id: str | None = None
    cascade_group: str | None = None
    # None: both; True: only undone; False: only active.
    undone: bool | None = None

    def matches(self, decision: Decision) -> bool:
        if self.feature_id is not None and decision.feature_id != self.feature_id:
            return False
        if self.phase is not None and decision.phase != self.phase:
            return False
        if self.category is not None and decision.category != self.category:
            return False
        if self.session_id is not None and decision.session_id != self.session_id:
            return False
        if self.cascade_group is not None and decision.cascade_group != self.cascade_group:
            return False
        if self.undone is not None and (decision.undone_at is not None) != self.undone:
            return False
        return True


class DecisionStore(Protocol):
    def record(self, decision: Decision) -> None: ...

    def get(self, decision_id: str) -> Decision | None: ...

    def query(self, project_id: str, filters: DecisionFilters | None = None) -> list[Decision]: ...

    def mark_undone(self, decision_ids: Iterable[str], by: str | None = None) -> list[Decision]: ...


def _newest_first(decisions: Iterable[Decision]) -> list[Decision]:
    return sorted(decisions, key=lambda d: d.created_at, reverse=True)


def _marked(
    decisions: dict[str, Decision], decision_ids: Iterable[str], by: str | None
) -> dict[str, Decision]:
    """Compute the undone copies for `decision_ids`, validating all before returning any."""
    at: datetime = utc_now()
    updated: dict[str, Decision] = {}
    for decision_id in dict.fromkeys(decision_ids):
        decision = decisions.get(decision_id)
        if decision is None:
            raise KeyError(decision_id)
        updated[decision_id] = decision.mark_undone(by=by, at=at)
    return updated


@dataclass
class InMemoryDecisionStore:
    _decisions: dict[str, Decision] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def record(self, decision: Decision) -> None:
        with self._lock:
            if decision.id in self._decisions:
                raise ValueError(f"Decision already recorded: {decision.id}")
            self._decisions[decision.id] = decision

    def get(self, decision_id: str) -> Decision | None:
        with self._lock:
            return self._decisions.get(decision_id)

    def query(self, project_id: str, filters: DecisionFilters | None = None) -> list[Decision]:
        filters = filters or DecisionFilters()
        with self._lock:
            matches = [
                d for d in self._decisions.values() if d.project_id == project_id and filters.matches(d)
            ]
        return _newest_first(matches)

    def mark_undone(self, decision_ids: Iterable[str], by: str | None = None) -> list[Decision]:
        with self._lock:
            updated = _marked(self._decisions, decision_ids, by)
            self._decisions.update(updated)
        return list(updated.values())


@dataclass
class JsonDecisionStore:
    """All decisions in a single JSON array file, guarded by a process-local lock.

    An unreadable file raises `JournalCorruptedError` and is never overwritten.
    Entries that fail validation are kept verbatim and written back on every
    save. Writes go to a temporary file renamed over the journal.
    """

    path: Path

    def __post_init__(self) -> None:
        self.path = Path(self.path)
        self._lock = threading.Lock()

    def _load_unlocked(self) -> tuple[dict[str, Decision], list[Any]]:
        if not self.path.exists():
            return {}, []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise JournalCorruptedError(str(self.path), str(e)) from e
        if not isinstance(raw, list):
            raise JournalCorruptedError(str(self.path), f"expected a JSON array, got {type(raw).__name__}")
        decisions: dict[str, Decision] = {}
        unreadable: list[Any] = []
        for item in raw:
            try:
                decision = Decision.from_json(item)
            except ValidationError as e:
                logger.warning("Keeping malformed decision as-is", extra={"path": str(self.path), "error": str(e)})
                unreadable.append(item)
                continue
            decisions[decision.id] = decision
        return decisions, unreadable

    def _save_unlocked(self, decisions: dict[str, Decision], unreadable: list[Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [*unreadable, *(d.to_json() for d in decisions.values())]
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        os.replace(tmp, self.path)

    def record(self, decision: Decision) -> None:
        with self._lock:
            decisions, unreadable = self._load_unlocked()
            taken = decisions.keys() | {item.get("id") for item in unreadable if isinstance(item, dict)}
            if decision.id in taken:
                raise ValueError(f"Decision already recorded: {decision.id}")
            decisions[decision.id] = decision
            self._save_unlocked(decisions, unreadable)

    def get(self, decision_id: str) -> Decision | None:
        with self._lock:
            decisions, _ = self._load_unlocked()
        return decisions.get(decision_id)

    def query(self, project_id: str, filters: DecisionFilters | None = None) -> list[Decision]:
        filters = filters or DecisionFilters()
        with self._lock:
            decisions, _ = self._load_unlocked()
        return _newest_first(d for d in decisions.values() if d.project_id == project_id and filters.matches(d))

    def mark_undone(self, decision_ids: Iterable[str], by: str | None = None) -> list[Decision]:
        with self._lock:
            decisions, unreadable = self._load_unlocked()
            updated = _marked(decisions, decision_ids, by)
            decisions.update(updated)
            self._save_unlocked(decisions, unreadable)
        return list(updated.values())
