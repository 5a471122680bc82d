"""Unit tests for local checkpoint and decision persistence."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from atomic_workflow.core.errors import IllegalTransitionError, JournalCorruptedError, SessionNotFoundError
from atomic_workflow.state.checkpoints import InMemoryCheckpointStore, JsonCheckpointStore
from atomic_workflow.state.decisions import DecisionFilters, InMemoryDecisionStore, JsonDecisionStore
from atomic_workflow.workflow.models import Decision, WorkflowState
from atomic_workflow.workflow.state_machine import RunStatus

T0 = datetime(2025, 1, 1, tzinfo=UTC)


def _state(session_id: str, *, project_id: str = "p1", status: RunStatus = RunStatus.RUNNING, minutes: int = 0) -> WorkflowState:
    return WorkflowState(
        session_id=session_id,
        project_id=project_id,
        workflow_id="wf",
        current_node="a",
        status=status,
        last_activity_at=T0 + timedelta(minutes=minutes),
    )


@pytest.fixture(params=["memory", "json"])
def store(request: pytest.FixtureRequest, temp_state_dir: Path) -> InMemoryCheckpointStore | JsonCheckpointStore:
    if request.param == "memory":
        return InMemoryCheckpointStore()
    return JsonCheckpointStore(temp_state_dir / "checkpoints")


def test_checkpoint_roundtrip(store: InMemoryCheckpointStore | JsonCheckpointStore) -> None:
    assert store.get("s1") is None

    state = _state("s1")
    state.data["k"] = {"nested": [1, 2]}
    store.save(state)

    loaded = store.get("s1")
    assert loaded is not None
    assert loaded.data == {"k": {"nested": [1, 2]}}
    assert loaded.status is RunStatus.RUNNING


def test_save_replaces_whole_record(store: InMemoryCheckpointStore | JsonCheckpointStore) -> None:
    state = _state("s1")
    state.data["old"] = 1
    store.save(state)

    state.data = {"new": 2}
    store.save(state)

    loaded = store.get("s1")
    assert loaded is not None
    assert loaded.data == {"new": 2}


def test_list_by_project_is_most_recent_first(store: InMemoryCheckpointStore | JsonCheckpointStore) -> None:
    store.save(_state("old", minutes=1))
    store.save(_state("new", minutes=5))
    store.save(_state("other", project_id="p2", minutes=9))

    assert [s.session_id for s in store.list_by_project("p1")] == ["new", "old"]


def test_get_active_skips_terminal_runs(store: InMemoryCheckpointStore | JsonCheckpointStore) -> None:
    store.save(_state("done", status=RunStatus.COMPLETED, minutes=10))
    store.save(_state("waiting", status=RunStatus.WAITING_USER, minutes=3))
    store.save(_state("paused", status=RunStatus.PAUSED, minutes=1))

    active = store.get_active("p1")
    assert active is not None
    assert active.session_id == "waiting"
    assert store.get_active("p2") is None


def test_update_status_validates_transition(store: InMemoryCheckpointStore | JsonCheckpointStore) -> None:
    store.save(_state("s1", status=RunStatus.WAITING_USER))

    updated = store.update_status("s1", RunStatus.FAILED, "Cancelled by user")
    assert updated.status is RunStatus.FAILED
    assert updated.last_error == "Cancelled by user"

    with pytest.raises(IllegalTransitionError):
        store.update_status("s1", RunStatus.RUNNING)
    with pytest.raises(SessionNotFoundError):
        store.update_status("missing", RunStatus.PAUSED)


def test_delete(store: InMemoryCheckpointStore | JsonCheckpointStore) -> None:
    store.save(_state("s1"))
    store.delete("s1")
    store.delete("s1")

    assert store.get("s1") is None


def test_json_store_skips_corrupt_files(temp_state_dir: Path) -> None:
    store = JsonCheckpointStore(temp_state_dir)
    store.save(_state("good"))
    (temp_state_dir / "bad.json").write_text("{not json", encoding="utf-8")

    assert [s.session_id for s in store.list_by_project("p1")] == ["good"]
    assert store.get("bad") is None


def test_json_store_rejects_path_like_session_ids(temp_state_dir: Path) -> None:
    store = JsonCheckpointStore(temp_state_dir)

    with pytest.raises(ValueError):
        store.get("../escape")


def _decision(decision_id: str, *, minutes: int = 0, **fields: object) -> Decision:
    created = T0 + timedelta(minutes=minutes)
    values: dict[str, object] = {
        "id": decision_id,
        "project_id": "p1",
        "session_id": "s1",
        "question_id": f"q-{decision_id}",
        "question_text": "Which database?",
        "answer_given": "postgres",
        "created_at": created,
        "updated_at": created,
    }
    values.update(fields)
    return Decision(**values)  # type: ignore[arg-type]


@pytest.fixture(params=["memory", "json"])
def decisions(request: pytest.FixtureRequest, tmp_path: Path) -> InMemoryDecisionStore | JsonDecisionStore:
    if request.param == "memory":
        return InMemoryDecisionStore()
    return JsonDecisionStore(tmp_path / "journal" / "decisions.json")


def test_decision_query_filters_and_order(decisions: InMemoryDecisionStore | JsonDecisionStore) -> None:
    decisions.record(_decision("d1", minutes=1, phase="cpo", category="data_model"))
    decisions.record(_decision("d2", minutes=2, phase="cto", category="data_model"))
    decisions.record(_decision("d3", minutes=3, phase="cto", category="security"))
    decisions.record(_decision("d4", minutes=4, project_id="p2"))

    assert [d.id for d in decisions.query("p1")] == ["d3", "d2", "d1"]
    assert [d.id for d in decisions.query("p1", DecisionFilters(phase="cto", category="data_model"))] == ["d2"]


def test_decision_record_rejects_duplicates(decisions: InMemoryDecisionStore | JsonDecisionStore) -> None:
    decisions.record(_decision("d1"))

    with pytest.raises(ValueError):
        decisions.record(_decision("d1"))


def test_mark_undone_is_all_or_nothing(decisions: InMemoryDecisionStore | JsonDecisionStore) -> None:
    decisions.record(_decision("d1"))

    with pytest.raises(KeyError):
        decisions.mark_undone(["d1", "missing"], by="alice")

    d1 = decisions.get("d1")
    assert d1 is not None
    assert d1.undone_at is None


def test_undone_filter(decisions: InMemoryDecisionStore | JsonDecisionStore) -> None:
    decisions.record(_decision("d1", minutes=1))
    decisions.record(_decision("d2", minutes=2))
    decisions.mark_undone(["d1"], by="alice")

    assert [d.id for d in decisions.query("p1", DecisionFilters(undone=True))] == ["d1"]
    assert [d.id for d in decisions.query("p1", DecisionFilters(undone=False))] == ["d2"]


def test_json_decision_store_persists_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "decisions.json"
    JsonDecisionStore(path).record(_decision("d1", answer_given={"choice": "b"}))

    reloaded = JsonDecisionStore(path).get("d1")

    assert reloaded is not None
    assert reloaded.answer_given == {"choice": "b"}
    assert reloaded.created_at == T0


def test_truncated_journal_is_never_overwritten(tmp_path: Path) -> None:
    path = tmp_path / "decisions.json"
    store = JsonDecisionStore(path)
    store.record(_decision("d1"))
    store.record(_decision("d2"))
    damaged = path.read_bytes()[:-5]
    path.write_bytes(damaged)

    with pytest.raises(JournalCorruptedError):
        store.record(_decision("d3"))
    with pytest.raises(JournalCorruptedError):
        store.mark_undone(["d1"], by="alice")
    with pytest.raises(JournalCorruptedError):
        store.query("p1")

    assert path.read_bytes() == damaged


def test_journal_that_is_not_an_array_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "decisions.json"
    path.write_text('{"id": "d1"}', encoding="utf-8")

    with pytest.raises(JournalCorruptedError):
        JsonDecisionStore(path).record(_decision("d2"))

    assert json.loads(path.read_text(encoding="utf-8")) == {"id": "d1"}


def test_malformed_entries_survive_later_writes(tmp_path: Path) -> None:
    path = tmp_path / "decisions.json"
    store = JsonDecisionStore(path)
    store.record(_decision("d1"))
    legacy = {**_decision("legacy").to_json(), "phase": "re"}
    entries = json.loads(path.read_text(encoding="utf-8"))
    path.write_text(json.dumps([*entries, legacy]), encoding="utf-8")

    store.record(_decision("d2"))
    store.mark_undone(["d1"], by="alice")

    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert legacy in on_disk
    assert sorted(item["id"] for item in on_disk) == ["d1", "d2", "legacy"]
    assert {d.id for d in store.query("p1")} == {"d1", "d2"}
    with pytest.raises(ValueError):
        store.record(_decision("legacy"))
    assert not path.with_suffix(".json.tmp").exists()
