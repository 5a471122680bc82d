"""Workflow definition loading, validation and transition resolution.

A definition module exports its workflow as the module attribute `workflow`
(either a `WorkflowConfig` from `define_workflow(...)` or a plain mapping with
`id` and `nodes`). It may also export `workflows`, an iterable of further
definitions that nested `workflow` nodes can refer to by id.

Validation is total: every schema problem and every bad static transition is
collected and reported together in one `ConfigValidationError`.
"""

from __future__ import annotations

import importlib
import importlib.util
import logging
import re
import sys
from collections.abc import Callable, Collection, Iterable, KeysView, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import TYPE_CHECKING, Any

from atomic_workflow.core.errors import ConfigValidationError, TransitionError
from atomic_workflow.workflow.nodes import (
    END,
    NodeDefinition,
    NodeType,
    Transition,
    WorkflowConfig,
    field_names,
    node_fields,
    node_from_fields,
)

if TYPE_CHECKING:
    from atomic_workflow.workflow.models import WorkflowState

logger = logging.getLogger(__name__)

EXPORT_NAME = "workflow"
EXTRA_EXPORT_NAME = "workflows"

_NODE_LABELS: dict[NodeType, str] = {
    NodeType.AGENT: "AgentNode",
    NodeType.COMMAND: "CommandNode",
    NodeType.SLASH_COMMAND: "SlashCommandNode",
    NodeType.EVAL: "EvalNode",
    NodeType.DYNAMIC_AGENT: "DynamicAgentNode",
    NodeType.DYNAMIC_COMMAND: "DynamicCommandNode",
    NodeType.CODE: "CodeNode",
    NodeType.WORKFLOW: "WorkflowNode",
}

# (field, accepts a function of state)
_REQUIRED_FIELDS: dict[NodeType, tuple[tuple[str, bool], ...]] = {
    NodeType.AGENT: (("role", False), ("system", False)),
    NodeType.COMMAND: (("command", False),),
    NodeType.SLASH_COMMAND: (("command", False),),
    NodeType.EVAL: (),
    NodeType.DYNAMIC_AGENT: (("model", True), ("prompt", True)),
    NodeType.DYNAMIC_COMMAND: (("command", True),),
    NodeType.CODE: (("handler", False),),
    NodeType.WORKFLOW: (("workflow_id", False),),
}

_TOP_LEVEL_KEYS = {"id", "nodes", "start", "initial_data"}


@dataclass(frozen=True, slots=True)
class LoadedConfig:
    config: WorkflowConfig
    # Declared node names plus END, in declaration order.
    valid_node_names: KeysView[str]
    source: str = ""

    @property
    def id(self) -> str:
        return self.config.id

    def node(self, name: str) -> NodeDefinition:
        return self.config.nodes[name]


@dataclass
class WorkflowRegistry:
    """Validated workflows addressable by id (used by nested workflow steps)."""

    _workflows: dict[str, LoadedConfig] = field(default_factory=dict)

    def register(self, loaded: LoadedConfig) -> None:
        if loaded.id in self._workflows and self._workflows[loaded.id] is not loaded:
            logger.warning("Replacing registered workflow", extra={"workflow_id": loaded.id})
        self._workflows[loaded.id] = loaded

    def get(self, workflow_id: str) -> LoadedConfig | None:
        return self._workflows.get(workflow_id)

    def ids(self) -> list[str]:
        return list(self._workflows)

    def __contains__(self, workflow_id: object) -> bool:
        return workflow_id in self._workflows


def _type_name(value: object) -> str:
    return "None" if value is None else type(value).__name__


def _valid_names(node_names: Iterable[str]) -> KeysView[str]:
    return dict.fromkeys([*node_names, END]).keys()


def _validate_node(name: str, node: Any) -> list[str]:
    errors: list[str] = []
    try:
        fields = node_fields(node)
    except TypeError:
        return [f'Node "{name}" must be a mapping or a node definition, got {_type_name(node)}']

    raw_type = fields.get("type")
    node_type: NodeType | None = None
    if raw_type is None or raw_type == "":
        errors.append(f'Node "{name}" must have a "type" property')
    elif not isinstance(raw_type, str):
        errors.append(f'Node "{name}" type must be a string')
    else:
        try:
            node_type = NodeType(raw_type)
        except ValueError:
            valid = ", ".join(t.value for t in NodeType)
            errors.append(f'Node "{name}" has unknown type "{raw_type}". Valid types are: {valid}')

    transition = fields.get("next", fields.get("then"))
    if transition is None:
        errors.append(f'Node "{name}" must have a "next" property')
    elif not isinstance(transition, str) and not callable(transition):
        errors.append(f'Node "{name}" "next" must be a string or function, got {_type_name(transition)}')

    requires_answer = fields.get("requires_answer")
    if requires_answer is not None and not isinstance(requires_answer, str):
        errors.append(f'Node "{name}" requires_answer must be a string')

    if node_type is None:
        return errors

    label = _NODE_LABELS[node_type]
    for key, dynamic in _REQUIRED_FIELDS[node_type]:
        value = fields.get(key)
        if value is None or value == "":
            errors.append(f'{label} "{name}" must have a "{key}" property')
        elif not isinstance(value, str) and not (dynamic and callable(value)):
            expected = "a string or function" if dynamic else "a string"
            errors.append(f'{label} "{name}" {key} must be {expected}')

    if node_type is NodeType.SLASH_COMMAND:
        # An empty instruction is allowed; a missing one is not.
        if "args" not in fields or fields["args"] is None:
            errors.append(f'{label} "{name}" must have an "args" property')
        elif not isinstance(fields["args"], str):
            errors.append(f'{label} "{name}" args must be a string')

    if node_type is NodeType.EVAL and not callable(fields.get("fn")):
        errors.append(f'{label} "{name}" must have a callable "fn" property')

    tools = fields.get("tools")
    if node_type is NodeType.AGENT and tools is not None and not isinstance(tools, list | tuple):
        errors.append(f'{label} "{name}" tools must be a list')

    known = field_names(node_type) | {"type", "then"}
    for key in fields:
        if key not in known:
            errors.append(f'{label} "{name}" has unknown property "{key}"')

    return errors


def validate_config_schema(raw: Any) -> list[str]:
    """Structural checks on a raw definition. Returns every problem found."""
    if isinstance(raw, WorkflowConfig):
        raw = config_to_mapping(raw)
    if not isinstance(raw, Mapping):
        return ["Config must be a mapping or a WorkflowConfig"]

    errors: list[str] = []
    config_id = raw.get("id")
    if config_id is None or config_id == "":
        errors.append('Config must have an "id" property' if config_id is None else 'Config "id" cannot be empty')
    elif not isinstance(config_id, str):
        errors.append(f'Config "id" must be a string, got {_type_name(config_id)}')
    elif not config_id.strip():
        errors.append('Config "id" cannot be empty')

    nodes = raw.get("nodes")
    if nodes is None:
        errors.append('Config must have a "nodes" property')
    elif not isinstance(nodes, Mapping):
        errors.append('Config "nodes" must be a mapping')
    elif not nodes:
        errors.append("Config must define at least one node")
    else:
        for name, node in nodes.items():
            if not isinstance(name, str) or not name:
                errors.append(f"Node names must be non-empty strings, got {name!r}")
                continue
            if name == END:
                errors.append(f'"{END}" is reserved and cannot be used as a node name')
            errors.extend(_validate_node(name, node))

        start = raw.get("start")
        if start is not None and start not in nodes:
            errors.append(f'Config "start" names undeclared node "{start}"')

    initial_data = raw.get("initial_data")
    if initial_data is not None and not isinstance(initial_data, Mapping):
        errors.append('Config "initial_data" must be a mapping')

    for key in raw:
        if key not in _TOP_LEVEL_KEYS:
            errors.append(f'Config has unknown property "{key}"')

    return errors


def validate_transitions(raw: Any) -> list[str]:
    """Check every static transition targets a declared node or END.

    Function transitions are accepted here; they are checked each time they
    are resolved.
    """
    if isinstance(raw, WorkflowConfig):
        raw = config_to_mapping(raw)
    nodes = raw.get("nodes") if isinstance(raw, Mapping) else None
    if not isinstance(nodes, Mapping):
        return []

    valid = _valid_names(n for n in nodes if isinstance(n, str))
    available = ", ".join(valid)
    errors: list[str] = []
    for name, node in nodes.items():
        try:
            fields = node_fields(node)
        except TypeError:
            continue
        transition = fields.get("next", fields.get("then"))
        if isinstance(transition, str) and transition not in valid:
            errors.append(
                f'Node "{name}" has invalid transition target "{transition}". Valid targets are: {available}'
            )
    return errors


def config_to_mapping(config: WorkflowConfig) -> dict[str, Any]:
    return {
        "id": config.id,
        "nodes": dict(config.nodes),
        "start": config.start,
        "initial_data": dict(config.initial_data),
    }


def validate_config(raw: Any, *, source: str = "") -> LoadedConfig:
    """Validate a raw definition and build the typed, loaded config.

    Raises:
        ConfigValidationError: with every schema and static-transition problem.
    """
    errors = validate_config_schema(raw)
    errors.extend(validate_transitions(raw))
    if errors:
        where = f' for "{source}"' if source else ""
        raise ConfigValidationError(f"Config validation failed{where}", errors, source=source)

    mapping = config_to_mapping(raw) if isinstance(raw, WorkflowConfig) else dict(raw)
    nodes = {
        name: node if isinstance(node, NodeDefinition) else node_from_fields(node)
        for name, node in mapping["nodes"].items()
    }
    config = WorkflowConfig(
        id=mapping["id"],
        nodes=nodes,
        start=mapping.get("start"),
        initial_data=dict(mapping.get("initial_data") or {}),
    )
    return LoadedConfig(config=config, valid_node_names=_valid_names(nodes), source=source)


def define_workflow(
    id: str,
    nodes: Mapping[str, NodeDefinition | Mapping[str, Any]],
    *,
    start: str | None = None,
    initial_data: Mapping[str, Any] | None = None,
) -> WorkflowConfig:
    """Declare a workflow in a definition module.

    Problems are reported at definition time with the same messages the
    loader produces.
    """
    raw = {"id": id, "nodes": dict(nodes), "start": start, "initial_data": dict(initial_data or {})}
    return validate_config(raw, source=id if isinstance(id, str) else "").config


def _module_name_for(path: Path) -> str:
    stem = re.sub(r"\W", "_", path.stem)
    return f"_atomic_workflow_config_{stem}_{abs(hash(str(path)))}"


def _import_file(path: Path, reference: str) -> ModuleType:
    if not path.is_file():
        raise ConfigValidationError(
            f'Config file not found: "{reference}"',
            [f'Could not find config file at "{path}". Make sure the file exists and the path is correct.'],
            source=reference,
        )
    module_name = _module_name_for(path)
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ConfigValidationError(
            f'Failed to load config file: "{reference}"',
            [f'"{path}" is not an importable Python file'],
            source=reference,
        )
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(module_name, None)
        raise
    return module


def import_config_module(reference: str | Path) -> ModuleType:
    """Import a definition module from a file path or a dotted module name.

    Import failures are classified as not found, syntax error or other.
    """
    ref = str(reference)
    is_path = isinstance(reference, Path) or ref.endswith(".py") or "/" in ref or "\\" in ref
    try:
        if is_path:
            return _import_file(Path(ref).resolve(), ref)
        return importlib.import_module(ref)
    except ConfigValidationError:
        raise
    except ModuleNotFoundError as e:
        if not is_path and e.name is not None and (ref == e.name or ref.startswith(e.name + ".")):
            raise ConfigValidationError(
                f'Config module not found: "{ref}"',
                [f'Could not import "{ref}". Make sure the module is on the import path.'],
                source=ref,
            ) from e
        raise ConfigValidationError(
            f'Failed to load config file: "{ref}"', [f"Import error: {e}"], source=ref
        ) from e
    except SyntaxError as e:
        location = f" (line {e.lineno})" if e.lineno else ""
        raise ConfigValidationError(
            f'Syntax error in config file: "{ref}"',
            [f"The config file has a syntax error{location}: {e.msg}"],
            source=ref,
        ) from e
    except Exception as e:
        raise ConfigValidationError(
            f'Failed to load config file: "{ref}"', [f"Import error: {type(e).__name__}: {e}"], source=ref
        ) from e


def _exported_workflow(module: ModuleType, ref: str) -> Any:
    raw = getattr(module, EXPORT_NAME, None)
    if raw is None:
        raise ConfigValidationError(
            f'Config file must export "{EXPORT_NAME}": "{ref}"',
            [
                f'The config module "{ref}" does not define a "{EXPORT_NAME}" attribute. '
                f'Use "{EXPORT_NAME} = define_workflow(...)" to export your config.'
            ],
            source=ref,
        )
    return raw


def load_config(reference: str | Path | ModuleType) -> LoadedConfig:
    """Load and validate the workflow exported by a definition module."""
    if isinstance(reference, ModuleType):
        module, ref = reference, reference.__name__
    else:
        module, ref = import_config_module(reference), str(reference)
    loaded = validate_config(_exported_workflow(module, ref), source=ref)
    logger.info(
        "Workflow config loaded",
        extra={"workflow_id": loaded.id, "source": ref, "nodes": len(loaded.config.nodes)},
    )
    return loaded


def load_registry(reference: str | Path | ModuleType) -> tuple[LoadedConfig, WorkflowRegistry]:
    """Load the main workflow plus any extra `workflows` the module exports.

    Problems in any of the definitions are reported together.
    """
    if isinstance(reference, ModuleType):
        module, ref = reference, reference.__name__
    else:
        module, ref = import_config_module(reference), str(reference)

    main = load_config(module)
    registry = WorkflowRegistry()
    registry.register(main)

    errors: list[str] = []
    for raw in getattr(module, EXTRA_EXPORT_NAME, None) or ():
        try:
            registry.register(validate_config(raw, source=ref))
        except ConfigValidationError as e:
            label = raw.id if isinstance(raw, WorkflowConfig) else (raw.get("id") if isinstance(raw, Mapping) else None)
            errors.extend(f"[{label or '?'}] {err}" for err in e.errors)
    if errors:
        raise ConfigValidationError(f'Config validation failed for "{ref}"', errors, source=ref)
    return main, registry


def resolve_transition(
    transition: Transition,
    state: WorkflowState,
    valid_names: Collection[str],
    current_node: str,
) -> str:
    """Resolve a node's transition to the next node name.

    Function transitions get the live state. The result is always checked
    against `valid_names`, whether or not it was checked at load time.

    Raises:
        TransitionError: if the function raises, or the name is not valid.
    """
    if callable(transition):
        fn: Callable[[WorkflowState], str] = transition
        try:
            target = fn(state)
        except Exception as e:
            raise TransitionError(
                f'Node "{current_node}" next() function threw an error: {e}',
                node=current_node,
                valid_targets=valid_names,
            ) from e
    else:
        target = transition

    if not isinstance(target, str):
        raise TransitionError(
            f'Node "{current_node}" next() returned {_type_name(target)}, expected string',
            node=current_node,
            valid_targets=valid_names,
        )
    if target not in valid_names:
        available = ", ".join(valid_names)
        raise TransitionError(
            f'Node "{current_node}" next() returned invalid target "{target}". Valid targets are: {available}',
            node=current_node,
            target=target,
            valid_targets=valid_names,
        )
    return target
