"""OpenAI model client implementation."""

import json
import logging
from typing import Any

import openai
from openai import AsyncOpenAI

from atomic_workflow.llm.provider import (
    ModelCallError,
    ModelClient,
    ModelErrorKind,
    ModelRequest,
    ModelResponse,
)

logger = logging.getLogger(__name__)


def _tool_definitions(tools: list[Any]) -> list[dict[str, Any]]:
    """Keep the tool entries that are OpenAI tool definitions.

    Bare tool names (as used by agent runtimes with built-in tools) have no
    schema to send and are dropped.
    """
    definitions = [t for t in tools if isinstance(t, dict)]
    if len(definitions) != len(tools):
        logger.debug("Dropping tool names without definitions", extra={"dropped": len(tools) - len(definitions)})
    return definitions


class OpenAIModelClient(ModelClient):
    """OpenAI API client.

    SDK-level retries are disabled: retry policy belongs to the LLM step
    executor, which needs to see every failure to classify it.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        """Initialize the OpenAI client.

        Args:
            api_key: OpenAI API key.
            base_url: Optional endpoint override.
            client: Pre-built SDK client (tests inject one).

        Raises:
            ValueError: If API key is not provided.
        """
        if client is None and not api_key:
            raise ValueError("OpenAI API key is required")

        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)

        logger.info("OpenAI model client initialized", extra={"base_url": base_url})

    async def call(self, request: ModelRequest) -> ModelResponse:
        """Run a chat completion for a compiled step request.

        Args:
            request: The compiled request.

        Returns:
            The completion content, parsed structured output and token usage.
        """
        messages = [
            {"role": "system", "content": request.system_prompt},
            {"role": "user", "content": request.user_prompt},
        ]
        kwargs: dict[str, Any] = {}
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.output_schema is not None:
            kwargs["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "step_output", "schema": request.output_schema},
            }
        tools = _tool_definitions(request.tools)
        if tools:
            kwargs["tools"] = tools

        logger.debug(
            "Requesting completion",
            extra={"model": request.model, "prompt_chars": len(request.user_prompt)},
        )

        try:
            response = await self.client.chat.completions.create(
                model=request.model,
                messages=messages,  # type: ignore[arg-type]
                max_tokens=request.max_tokens,
                **kwargs,
            )
        except openai.RateLimitError as e:
            raise ModelCallError(str(e), kind=ModelErrorKind.RATE_LIMIT) from e
        except openai.APITimeoutError as e:
            raise ModelCallError(str(e), kind=ModelErrorKind.TIMEOUT) from e
        except openai.APIConnectionError as e:
            raise ModelCallError(str(e), kind=ModelErrorKind.API_ERROR, retryable=True) from e
        except openai.APIStatusError as e:
            if e.status_code >= 500:
                raise ModelCallError(
                    str(e), kind=ModelErrorKind.API_ERROR, retryable=True
                ) from e
            raise ModelCallError(str(e), kind=ModelErrorKind.INVALID_REQUEST) from e
        except openai.OpenAIError as e:
            raise ModelCallError(str(e), kind=ModelErrorKind.UNKNOWN) from e

        message = response.choices[0].message
        content = message.content or ""
        tool_calls = getattr(message, "tool_calls", None)
        if not content and tool_calls:
            # Tool calls are not executed here; surface what the model asked for.
            content = json.dumps(
                [{"name": c.function.name, "arguments": c.function.arguments} for c in tool_calls]
            )
        tokens_used = response.usage.total_tokens if response.usage is not None else 0

        structured: Any = None
        if request.output_schema is not None:
            try:
                structured = json.loads(content)
            except json.JSONDecodeError as e:
                raise ModelCallError(
                    f"Model returned invalid JSON for structured output: {e}",
                    kind=ModelErrorKind.UNKNOWN,
                ) from e

        logger.debug(
            "Completion received", extra={"model": request.model, "tokens_used": tokens_used}
        )
        return ModelResponse(content=content, structured=structured, tokens_used=tokens_used)

    async def aclose(self) -> None:
        await self.client.close()
