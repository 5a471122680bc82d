"""CLI entrypoint.

A thin host around the engine: loads a definition module, wires the JSON
stores and the model client from settings, and drives runs.

Exit codes: 0 success, 1 unexpected failure, 2 configuration error,
4 run failed, 5 run halted (paused or waiting for an answer).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from atomic_workflow import __version__
from atomic_workflow.core.config import WorkflowSettings
from atomic_workflow.core.errors import ConfigValidationError, SessionNotFoundError
from atomic_workflow.core.logging import configure_logging
from atomic_workflow.llm.factory import ModelClientFactory
from atomic_workflow.llm.provider import ModelClient
from atomic_workflow.state.checkpoints import JsonCheckpointStore
from atomic_workflow.state.decisions import DecisionFilters, JsonDecisionStore
from atomic_workflow.workflow.clarify import register_clarify_handlers
from atomic_workflow.workflow.engine import WorkflowEngine
from atomic_workflow.workflow.journal import DecisionJournal
from atomic_workflow.workflow.loader import WorkflowRegistry, import_config_module, load_registry
from atomic_workflow.workflow.models import WorkflowState
from atomic_workflow.workflow.nodes import LLM_NODE_TYPES
from atomic_workflow.workflow.state_machine import RunStatus
from atomic_workflow.workflow.steps.code_step import HandlerRegistry

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_RUN_FAILED = 4
EXIT_RUN_HALTED = 5


def _parse_data(value: str | None) -> dict[str, Any]:
    if value is None:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"--data must be a JSON object: {e}") from e
    if not isinstance(data, dict):
        raise argparse.ArgumentTypeError("--data must be a JSON object")
    return data


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="atomic-workflow",
        description="Run and inspect declarative multi-step workflows",
    )
    parser.add_argument("--version", action="version", version=f"atomic-workflow {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Load and validate a workflow definition")
    validate.add_argument("config", nargs="?", default=None, help="Definition file or module (default: ATOMIC_CONFIG)")

    run = subparsers.add_parser("run", help="Start a new run and drive it until it halts")
    run.add_argument("config", help="Definition file or module")
    run.add_argument("--session", default=None, help="Session id (generated when omitted)")
    run.add_argument("--project", default="default", help="Project id the run belongs to")
    run.add_argument("--data", default=None, help="Initial run data as a JSON object")

    resume = subparsers.add_parser("resume", help="Resume a paused or waiting run")
    resume.add_argument("config", help="Definition file or module")
    resume.add_argument("session", help="Session id")

    status = subparsers.add_parser("status", help="Print the persisted state of a run")
    status.add_argument("session", help="Session id")

    decisions = subparsers.add_parser("decisions", help="List recorded decisions for a project")
    decisions.add_argument("project", help="Project id")
    decisions.add_argument("--phase", choices=["cpo", "clarify", "cto"], default=None)
    decisions.add_argument("--category", default=None)
    decisions.add_argument("--session", default=None)
    decisions.add_argument("--cascade-group", default=None)
    undone = decisions.add_mutually_exclusive_group()
    undone.add_argument("--undone", dest="undone", action="store_const", const=True, default=None)
    undone.add_argument("--active", dest="undone", action="store_const", const=False)

    undo = subparsers.add_parser("undo", help="Undo a decision (soft mark; nothing is deleted)")
    undo.add_argument("decision_id", help="Decision id")
    undo.add_argument("--cascade", action="store_true", help="Also undo later decisions in the same cascade group")
    undo.add_argument("--by", default=None, help="Who is undoing the decision")
    undo.add_argument("--dry-run", action="store_true", help="Only print what would be undone")

    return parser


def _uses_llm(workflows: WorkflowRegistry) -> bool:
    for workflow_id in workflows.ids():
        loaded = workflows.get(workflow_id)
        if loaded is not None and any(n.node_type in LLM_NODE_TYPES for n in loaded.config.nodes.values()):
            return True
    return False


def build_engine(settings: WorkflowSettings, config_ref: str) -> WorkflowEngine:
    """Wire an engine for `config_ref` from settings.

    The definition module may export `handlers`, a mapping of code-step
    handler names to callables.
    """
    module = import_config_module(config_ref)
    main_config, workflows = load_registry(module)

    handlers = register_clarify_handlers(HandlerRegistry())
    extra_handlers = getattr(module, "handlers", None)
    if isinstance(extra_handlers, Mapping):
        for name, fn in extra_handlers.items():
            handlers.register(name, fn)

    model_client: ModelClient | None = None
    if _uses_llm(workflows):
        model_client = ModelClientFactory.create(settings)

    return WorkflowEngine(
        main_config,
        checkpoints=JsonCheckpointStore(settings.state_dir),
        model_client=model_client,
        handlers=handlers,
        journal=DecisionJournal(JsonDecisionStore(settings.decisions_file)),
        policy=settings.execution_policy(),
        workflows=workflows,
    )


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _run_summary(state: WorkflowState) -> dict[str, Any]:
    return {
        "sessionId": state.session_id,
        "workflowId": state.workflow_id,
        "status": state.status.value,
        "currentNode": state.current_node,
        "steps": len(state.step_history),
        "lastError": state.last_error,
    }


def _exit_code_for(state: WorkflowState) -> int:
    if state.status is RunStatus.COMPLETED:
        return EXIT_OK
    if state.status is RunStatus.FAILED:
        return EXIT_RUN_FAILED
    return EXIT_RUN_HALTED


async def _drive(engine: WorkflowEngine, args: argparse.Namespace) -> WorkflowState:
    try:
        if args.command == "run":
            state = await engine.start(project_id=args.project, session_id=args.session, data=_parse_data(args.data))
            return await engine.run(state.session_id)
        return await engine.resume(args.session)
    finally:
        if engine.model_client is not None:
            await engine.model_client.aclose()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = WorkflowSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return EXIT_CONFIG

    configure_logging(settings.log_level)

    try:
        if args.command == "validate":
            config_ref = args.config or settings.config_path
            _main, workflows = load_registry(config_ref)
            for workflow_id in workflows.ids():
                loaded = workflows.get(workflow_id)
                if loaded is not None:
                    print(f"OK {workflow_id}: {len(loaded.config.nodes)} nodes")
            return EXIT_OK

        if args.command in ("run", "resume"):
            engine = build_engine(settings, args.config)
            state = asyncio.run(_drive(engine, args))
            _print_json(_run_summary(state))
            return _exit_code_for(state)

        if args.command == "status":
            state = JsonCheckpointStore(settings.state_dir).get(args.session)
            if state is None:
                raise SessionNotFoundError(args.session)
            _print_json(state.to_json())
            return EXIT_OK

        journal = DecisionJournal(JsonDecisionStore(settings.decisions_file))

        if args.command == "decisions":
            filters = DecisionFilters(
                phase=args.phase,
                category=args.category,
                session_id=args.session,
                cascade_group=args.cascade_group,
                undone=args.undone,
            )
            _print_json([d.to_json() for d in journal.get_decisions(args.project, filters)])
            return EXIT_OK

        if args.command == "undo":
            preview = journal.preview_undo(args.decision_id)
            ids = preview.decision_ids if args.cascade else [preview.target.id]
            if args.dry_run:
                _print_json({"wouldUndo": ids, "cascadeCandidates": [d.id for d in preview.cascade]})
                return EXIT_OK
            undone = journal.undo_decisions(ids, args.by)
            _print_json([d.to_json() for d in undone])
            return EXIT_OK

        logger.error("Unknown command", extra={"command": args.command})
        return EXIT_CONFIG

    except ConfigValidationError as e:
        logger.error("Invalid workflow definition", extra={"source": e.source, "errors": e.errors})
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG

    except argparse.ArgumentTypeError as e:
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG

    except (SessionNotFoundError, KeyError) as e:
        message = str(e) if isinstance(e, SessionNotFoundError) else f"Not found: {e.args[0]}"
        print(message, file=sys.stderr)
        return EXIT_ERROR

    except ValueError as e:
        # Raised while wiring collaborators, e.g. a missing API key.
        logger.error("Configuration error", extra={"error": str(e)})
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    except Exception:
        logger.exception("Command failed")
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
