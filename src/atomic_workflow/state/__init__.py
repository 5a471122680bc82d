"""Persistence collaborators for run checkpoints and the decision journal."""

from atomic_workflow.state.checkpoints import (
    CheckpointStore,
    InMemoryCheckpointStore,
    JsonCheckpointStore,
)
from atomic_workflow.state.decisions import (
    DecisionFilters,
    DecisionStore,
    InMemoryDecisionStore,
    JsonDecisionStore,
)

__all__ = [
    "CheckpointStore",
    "DecisionFilters",
    "DecisionStore",
    "InMemoryCheckpointStore",
    "InMemoryDecisionStore",
    "JsonCheckpointStore",
    "JsonDecisionStore",
]
