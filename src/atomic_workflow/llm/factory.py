"""Factory for creating model clients."""

import logging

from atomic_workflow.core.config import WorkflowSettings
from atomic_workflow.llm.openai_provider import OpenAIModelClient
from atomic_workflow.llm.provider import ModelClient

logger = logging.getLogger(__name__)


class ModelClientFactory:
    """Factory for creating model client instances."""

    @staticmethod
    def create(settings: WorkflowSettings) -> ModelClient:
        """Create a model client based on settings.

        Args:
            settings: Settings carrying endpoint credentials.

        Returns:
            Configured model client instance.

        Raises:
            ValueError: If no API key is configured.
        """
        logger.info(
            "Creating model client",
            extra={"base_url": settings.openai_base_url, "default_model": settings.default_model},
        )
        return OpenAIModelClient(settings.openai_api_key, base_url=settings.openai_base_url)
