"""Unit tests for the CLI host."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from atomic_workflow.main import EXIT_CONFIG, EXIT_OK, EXIT_RUN_FAILED, EXIT_RUN_HALTED, build_parser, main
from atomic_workflow.state.decisions import JsonDecisionStore
from atomic_workflow.workflow.models import Decision

FLOW = """\
from atomic_workflow import END, CodeNode, EvalNode, define_workflow


def shout(data, ctx):
    return {"shout": data["word"].upper()}


handlers = {"shout": shout}

workflow = define_workflow(
    "cli-demo",
    {
        "bump": EvalNode(fn=lambda s: {"n": s.data.get("n", 0) + 1}, next="shout"),
        "shout": CodeNode(handler="shout", next=END),
    },
    initial_data={"word": "hi"},
)
"""

ASKING_FLOW = """\
from atomic_workflow import END, EvalNode, define_workflow

workflow = define_workflow(
    "asking",
    {"ask": EvalNode(fn=lambda s: {}, requires_answer="scope", next=END)},
)
"""

FAILING_FLOW = """\
from atomic_workflow import END, CodeNode, define_workflow

workflow = define_workflow("failing", {"run": CodeNode(handler="not_registered", next=END)})
"""


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ATOMIC_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("ATOMIC_DECISIONS_FILE", str(tmp_path / "decisions.json"))
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("ATOMIC_CONFIG", raising=False)
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield tmp_path
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)


def _write(directory: Path, name: str, source: str) -> str:
    path = directory / name
    path.write_text(source, encoding="utf-8")
    return str(path)


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_validate(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config = _write(workspace, "flow.py", FLOW)

    assert main(["validate", config]) == EXIT_OK
    assert "OK cli-demo: 2 nodes" in capsys.readouterr().out


def test_validate_reports_definition_errors(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config = _write(
        workspace,
        "broken.py",
        "workflow = {'id': 'broken', 'nodes': {'a': {'type': 'command', 'next': 'b'}}}\n",
    )

    assert main(["validate", config]) == EXIT_CONFIG
    err = capsys.readouterr().err
    assert 'CommandNode "a" must have a "command" property' in err
    assert 'Node "a" has invalid transition target "b". Valid targets are: a, END' in err


def test_run_and_status(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config = _write(workspace, "flow.py", FLOW)

    assert main(["run", config, "--session", "s1", "--data", '{"n": 4}']) == EXIT_OK
    summary = json.loads(capsys.readouterr().out)
    assert summary["status"] == "completed"
    assert summary["steps"] == 2

    assert main(["status", "s1"]) == EXIT_OK
    state = json.loads(capsys.readouterr().out)
    assert state["data"]["n"] == 5
    assert state["data"]["shout"] == "HI"


def test_run_rejects_non_object_data(workspace: Path) -> None:
    config = _write(workspace, "flow.py", FLOW)

    assert main(["run", config, "--data", "[1, 2]"]) == EXIT_CONFIG


def test_halted_and_failed_runs_have_distinct_exit_codes(workspace: Path) -> None:
    asking = _write(workspace, "asking.py", ASKING_FLOW)
    failing = _write(workspace, "failing.py", FAILING_FLOW)

    assert main(["run", asking, "--session", "a1"]) == EXIT_RUN_HALTED
    assert main(["run", failing, "--session", "f1"]) == EXIT_RUN_FAILED


def test_status_of_unknown_session(workspace: Path) -> None:
    assert main(["status", "nope"]) == 1


def test_decisions_and_undo(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    store = JsonDecisionStore(workspace / "decisions.json")
    store.record(Decision(id="d1", project_id="p1", session_id="s1", question_id="q", question_text="Which API?"))

    assert main(["decisions", "p1"]) == EXIT_OK
    assert [d["id"] for d in json.loads(capsys.readouterr().out)] == ["d1"]

    assert main(["undo", "d1", "--by", "alice"]) == EXIT_OK
    [undone] = json.loads(capsys.readouterr().out)
    assert undone["undoneBy"] == "alice"

    assert main(["decisions", "p1", "--active"]) == EXIT_OK
    assert json.loads(capsys.readouterr().out) == []
