"""Node definitions and transitions.

A workflow is a graph of typed nodes. Every node carries a `next` transition:
either the name of another node (or `END`), or a function of the live run
state returning one. Dynamic node kinds additionally accept functions of state
for their own fields; those are resolved immediately before execution.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, TypeVar, Union

if TYPE_CHECKING:
    from atomic_workflow.workflow.models import WorkflowState

END = "END"

T = TypeVar("T")

Transition = Union[str, Callable[["WorkflowState"], str]]
Dynamic = Union[T, Callable[["WorkflowState"], T]]


class NodeType(str, Enum):
    AGENT = "agent"
    COMMAND = "command"
    SLASH_COMMAND = "slash-command"
    EVAL = "eval"
    DYNAMIC_AGENT = "dynamic-agent"
    DYNAMIC_COMMAND = "dynamic-command"
    CODE = "code"
    WORKFLOW = "workflow"


@dataclass(frozen=True, slots=True)
class DecisionCapture:
    """Marks an agent node's output as the answer to a human-visible question."""

    question_id: str
    question_text: str
    category: str | None = None
    cascade_group: str | None = None
    # Key in `data` holding the AI recommendation ({"recommendedOptionId": ...}).
    recommendation_key: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class NodeDefinition:
    node_type: ClassVar[NodeType]
    dynamic_fields: ClassVar[tuple[str, ...]] = ()

    next: Transition
    # Question that must be answered (or skipped) before this node may run.
    requires_answer: str | None = None

    def resolve(self, state: WorkflowState) -> NodeDefinition:
        """Return a copy with every dynamic field evaluated against `state`."""
        if not self.dynamic_fields:
            return self
        values = {name: resolve_dynamic(getattr(self, name), state) for name in self.dynamic_fields}
        return dataclasses.replace(self, **values)


@dataclass(frozen=True, slots=True, kw_only=True)
class AgentNode(NodeDefinition):
    node_type: ClassVar[NodeType] = NodeType.AGENT

    role: str
    system: str
    tools: list[Any] = field(default_factory=list)
    prompt: str = ""
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    output_schema: dict[str, Any] | None = None
    timeout: int | None = None
    retryable: bool = True
    decision: DecisionCapture | None = None
    result_key: str = "lastAgentResult"


@dataclass(frozen=True, slots=True, kw_only=True)
class CommandNode(NodeDefinition):
    node_type: ClassVar[NodeType] = NodeType.COMMAND

    command: str
    cwd: str | None = None
    env: dict[str, str] | None = None
    timeout: int | None = None
    throw_on_error: bool = True
    result_key: str = "lastCommandResult"


@dataclass(frozen=True, slots=True, kw_only=True)
class SlashCommandNode(NodeDefinition):
    node_type: ClassVar[NodeType] = NodeType.SLASH_COMMAND

    command: str
    args: str
    model: str | None = None
    max_tokens: int | None = None
    timeout: int | None = None
    retryable: bool = True
    result_key: str = "lastAgentResult"

    @property
    def instruction(self) -> str:
        return f"/{self.command} {self.args}".rstrip()


@dataclass(frozen=True, slots=True, kw_only=True)
class EvalNode(NodeDefinition):
    node_type: ClassVar[NodeType] = NodeType.EVAL

    fn: Callable[[WorkflowState], Mapping[str, Any]]
    result_key: str = "lastEvalResult"


@dataclass(frozen=True, slots=True, kw_only=True)
class DynamicAgentNode(NodeDefinition):
    node_type: ClassVar[NodeType] = NodeType.DYNAMIC_AGENT
    dynamic_fields: ClassVar[tuple[str, ...]] = (
        "model",
        "prompt",
        "system",
        "tools",
        "max_turns",
        "temperature",
        "max_tokens",
        "timeout",
    )

    model: Dynamic[str]
    prompt: Dynamic[str]
    system: Dynamic[str] | None = None
    tools: Dynamic[list[Any]] | None = None
    max_turns: Dynamic[int] | None = None
    temperature: Dynamic[float] | None = None
    max_tokens: Dynamic[int] | None = None
    timeout: Dynamic[int] | None = None
    output_schema: dict[str, Any] | None = None
    retryable: bool = True
    decision: DecisionCapture | None = None
    result_key: str = "lastAgentResult"


@dataclass(frozen=True, slots=True, kw_only=True)
class DynamicCommandNode(NodeDefinition):
    node_type: ClassVar[NodeType] = NodeType.DYNAMIC_COMMAND
    dynamic_fields: ClassVar[tuple[str, ...]] = ("command", "cwd", "env", "timeout")

    command: Dynamic[str]
    cwd: Dynamic[str] | None = None
    env: Dynamic[dict[str, str]] | None = None
    timeout: Dynamic[int] | None = None
    throw_on_error: bool = True
    result_key: str = "lastCommandResult"


@dataclass(frozen=True, slots=True, kw_only=True)
class CodeNode(NodeDefinition):
    node_type: ClassVar[NodeType] = NodeType.CODE
    dynamic_fields: ClassVar[tuple[str, ...]] = ("input",)

    handler: str
    input: Dynamic[dict[str, Any]] | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class WorkflowNode(NodeDefinition):
    """Runs another registered workflow to completion as one step."""

    node_type: ClassVar[NodeType] = NodeType.WORKFLOW
    dynamic_fields: ClassVar[tuple[str, ...]] = ("input",)

    workflow_id: str
    input: Dynamic[dict[str, Any]] | None = None
    # parent data key -> child data key
    input_mapping: dict[str, str] | None = None
    # child data key -> parent data key
    output_mapping: dict[str, str] | None = None


NODE_CLASSES: dict[NodeType, type[NodeDefinition]] = {
    NodeType.AGENT: AgentNode,
    NodeType.COMMAND: CommandNode,
    NodeType.SLASH_COMMAND: SlashCommandNode,
    NodeType.EVAL: EvalNode,
    NodeType.DYNAMIC_AGENT: DynamicAgentNode,
    NodeType.DYNAMIC_COMMAND: DynamicCommandNode,
    NodeType.CODE: CodeNode,
    NodeType.WORKFLOW: WorkflowNode,
}

LLM_NODE_TYPES = frozenset({NodeType.AGENT, NodeType.DYNAMIC_AGENT, NodeType.SLASH_COMMAND})
SHELL_NODE_TYPES = frozenset({NodeType.COMMAND, NodeType.DYNAMIC_COMMAND})


@dataclass(frozen=True, slots=True)
class WorkflowConfig:
    id: str
    nodes: dict[str, NodeDefinition]
    start: str | None = None
    initial_data: dict[str, Any] = field(default_factory=dict)

    @property
    def start_node(self) -> str:
        return self.start or next(iter(self.nodes))


def resolve_dynamic(value: Dynamic[T], state: WorkflowState) -> T:
    if callable(value):
        return value(state)
    return value


def node_fields(node: object) -> dict[str, Any]:
    """View a node given as a mapping or a node dataclass as a plain mapping."""
    if isinstance(node, Mapping):
        return dict(node)
    if isinstance(node, NodeDefinition):
        out = {f.name: getattr(node, f.name) for f in dataclasses.fields(node)}
        out["type"] = node.node_type.value
        return out
    raise TypeError(f"Unsupported node definition: {type(node).__name__}")


def node_from_fields(fields: Mapping[str, Any]) -> NodeDefinition:
    """Build a typed node from an already-validated mapping.

    `then` is accepted as an alias of `next`.
    """
    values = dict(fields)
    node_type = NodeType(values.pop("type"))
    if "next" not in values and "then" in values:
        values["next"] = values.pop("then")
    values.pop("then", None)
    decision = values.get("decision")
    if isinstance(decision, Mapping):
        values["decision"] = DecisionCapture(**decision)
    return NODE_CLASSES[node_type](**values)


def field_names(node_type: NodeType) -> set[str]:
    return {f.name for f in dataclasses.fields(NODE_CLASSES[node_type])}
