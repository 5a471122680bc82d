"""Abstract base class for model clients."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ModelErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    API_ERROR = "api_error"
    INVALID_REQUEST = "invalid_request"
    UNKNOWN = "unknown"


class ModelCallError(Exception):
    """A model call failed with a classifiable kind.

    Clients must raise this (rather than SDK exceptions) so that the LLM step
    retry policy can tell transient failures from permanent ones.
    """

    def __init__(
        self, message: str, *, kind: ModelErrorKind, retryable: bool | None = None
    ) -> None:
        super().__init__(message)
        self.kind = kind
        # API errors are only retryable when the client says so; the other kinds
        # have a fixed answer.
        if retryable is None:
            retryable = kind in {ModelErrorKind.RATE_LIMIT, ModelErrorKind.TIMEOUT}
        self.retryable = retryable


@dataclass(frozen=True, slots=True)
class ModelRequest:
    model: str
    system_prompt: str
    user_prompt: str
    max_tokens: int
    temperature: float | None = None
    output_schema: dict[str, Any] | None = None
    tools: list[Any] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ModelResponse:
    content: str
    structured: Any = None
    tokens_used: int = 0


class ModelClient(ABC):
    """Abstract base class for model clients.

    This interface allows pluggable model backends. Implementations must
    surface failures as :class:`ModelCallError`.
    """

    @abstractmethod
    async def call(self, request: ModelRequest) -> ModelResponse:
        """Run one bounded model call.

        Args:
            request: Fully compiled prompts and generation parameters.

        Returns:
            The model's content, its parsed structured output (when an output
            schema was requested) and the number of tokens used.

        Raises:
            ModelCallError: On any failure.
        """
        pass

    async def aclose(self) -> None:
        """Release network resources held by the client."""
        return None
