"""Checkpoint persistence for run state.

The engine persists the complete `WorkflowState` after every tick. Stores
never merge partial updates: a save replaces the whole record for that
session.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from atomic_workflow.core.errors import SessionNotFoundError
from atomic_workflow.workflow.models import WorkflowState
from atomic_workflow.workflow.state_machine import ACTIVE_STATUSES, RunStatus

logger = logging.getLogger(__name__)


class CheckpointStore(Protocol):
    def save(self, state: WorkflowState) -> None: ...

    def get(self, session_id: str) -> WorkflowState | None: ...

    def list_by_project(self, project_id: str) -> list[WorkflowState]: ...

    def get_active(self, project_id: str) -> WorkflowState | None: ...

    def update_status(
        self, session_id: str, status: RunStatus, error: str | None = None
    ) -> WorkflowState: ...

    def delete(self, session_id: str) -> None: ...


def _apply_status(state: WorkflowState, status: RunStatus, error: str | None) -> WorkflowState:
    updated = state.model_copy(deep=True)
    updated.move_to(status)
    if error is not None:
        updated.last_error = error
    return updated


def _most_recent_first(states: list[WorkflowState]) -> list[WorkflowState]:
    return sorted(states, key=lambda s: s.last_activity_at, reverse=True)


def _pick_active(states: list[WorkflowState]) -> WorkflowState | None:
    for state in _most_recent_first(states):
        if state.status in ACTIVE_STATUSES:
            return state
    return None


@dataclass
class InMemoryCheckpointStore:
    """Checkpoint store kept in process memory. States are copied on the way in and out."""

    _states: dict[str, WorkflowState] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def save(self, state: WorkflowState) -> None:
        with self._lock:
            self._states[state.session_id] = state.model_copy(deep=True)

    def get(self, session_id: str) -> WorkflowState | None:
        with self._lock:
            state = self._states.get(session_id)
            return state.model_copy(deep=True) if state else None

    def list_by_project(self, project_id: str) -> list[WorkflowState]:
        with self._lock:
            matches = [s.model_copy(deep=True) for s in self._states.values() if s.project_id == project_id]
        return _most_recent_first(matches)

    def get_active(self, project_id: str) -> WorkflowState | None:
        return _pick_active(self.list_by_project(project_id))

    def update_status(self, session_id: str, status: RunStatus, error: str | None = None) -> WorkflowState:
        with self._lock:
            state = self._states.get(session_id)
            if state is None:
                raise SessionNotFoundError(session_id)
            updated = _apply_status(state, status, error)
            self._states[session_id] = updated
            return updated.model_copy(deep=True)

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._states.pop(session_id, None)


@dataclass
class JsonCheckpointStore:
    """One JSON document per session under `directory`.

    Writes go to a temporary file that is then renamed over the target, so a
    reader never observes a half-written checkpoint.
    """

    directory: Path

    def __post_init__(self) -> None:
        self.directory = Path(self.directory)
        self._lock = threading.Lock()

    def _path(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id.startswith("."):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.directory / f"{session_id}.json"

    def _read_unlocked(self, path: Path) -> WorkflowState | None:
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return WorkflowState.from_json(raw)
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Skipping unreadable checkpoint", extra={"path": str(path), "error": str(e)})
            return None

    def _write_unlocked(self, state: WorkflowState) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(state.session_id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(
            json.dumps(state.to_json(), indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
        os.replace(tmp, path)

    def _all_unlocked(self) -> list[WorkflowState]:
        if not self.directory.exists():
            return []
        states = []
        for path in sorted(self.directory.glob("*.json")):
            state = self._read_unlocked(path)
            if state is not None:
                states.append(state)
        return states

    def save(self, state: WorkflowState) -> None:
        with self._lock:
            self._write_unlocked(state)

    def get(self, session_id: str) -> WorkflowState | None:
        with self._lock:
            return self._read_unlocked(self._path(session_id))

    def list_by_project(self, project_id: str) -> list[WorkflowState]:
        with self._lock:
            states = [s for s in self._all_unlocked() if s.project_id == project_id]
        return _most_recent_first(states)

    def get_active(self, project_id: str) -> WorkflowState | None:
        return _pick_active(self.list_by_project(project_id))

    def update_status(self, session_id: str, status: RunStatus, error: str | None = None) -> WorkflowState:
        with self._lock:
            state = self._read_unlocked(self._path(session_id))
            if state is None:
                raise SessionNotFoundError(session_id)
            updated = _apply_status(state, status, error)
            self._write_unlocked(updated)
            return updated

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._path(session_id).unlink(missing_ok=True)
