"""LLM package initialization."""

from atomic_workflow.llm.factory import ModelClientFactory
from atomic_workflow.llm.provider import (
    ModelCallError,
    ModelClient,
    ModelErrorKind,
    ModelRequest,
    ModelResponse,
)

__all__ = [
    "ModelCallError",
    "ModelClient",
    "ModelClientFactory",
    "ModelErrorKind",
    "ModelRequest",
    "ModelResponse",
]
