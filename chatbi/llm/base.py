"""
Base LLM Provider

Abstract base class defining the interface for all model providers.
Ensures a consistent API across OpenAI, Anthropic, Ollama and generic gateways.
"""

import asyncio
import logging
from abc import ABC, abstractmethod

from chatbi.llm.errors import classify_provider_error
from chatbi.llm.models import LLMRequest, LLMResponse, ModelInfo

logger = logging.getLogger(__name__)


class BaseLLMProvider(ABC):
    """
    Abstract base class for model providers.

    Concrete providers implement ``generate``. Callers go through ``complete``,
    which enforces the provider deadline and maps transport failures onto the
    ModelProvider* error taxonomy.

    Attributes:
        provider_name: Unique identifier for this provider
        temperature: Default sampling temperature
        max_tokens: Default maximum tokens to generate
        timeout: Request deadline in seconds
    """

    def __init__(
        self,
        provider_name: str,
        temperature: float = 0.0,
        max_tokens: int = 2000,
        timeout: float = 20.0,
    ):
        self.provider_name = provider_name
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout

        logger.info(
            f"Initialized {provider_name} provider",
            extra={
                "provider": provider_name,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "timeout": timeout,
            },
        )

    @abstractmethod
    async def generate(self, request: LLMRequest) -> LLMResponse:
        """
        Generate a completion from the model.

        Args:
            request: Request with messages and parameters

        Returns:
            LLMResponse with generated content and metadata

        Raises:
            Exception: Provider-specific errors (API errors, transport errors)
        """
        pass  # pragma: no cover - abstract method

    @abstractmethod
    def get_model_info(self, model_name: str | None = None) -> ModelInfo:
        """Get information about a model."""
        pass  # pragma: no cover - abstract method

    def count_tokens(self, text: str) -> int:
        """Rough token estimate (~4 characters per token)."""
        return len(text) // 4

    async def complete(self, request: LLMRequest) -> LLMResponse:
        """
        Call ``generate`` under the provider deadline.

        Raises:
            ModelProviderTimeout: The call did not finish in ``timeout`` seconds
            ModelProviderNetworkError: DNS, refused connection, or transport failure
            ModelProviderAuthError: Credentials were rejected
        """
        try:
            return await asyncio.wait_for(self.generate(request), timeout=self.timeout)
        except Exception as exc:
            classified = classify_provider_error(self.provider_name, exc, self.timeout)
            if classified is None:
                raise
            logger.error(
                f"{self.provider_name} call failed: {classified.message}",
                extra={
                    "provider": self.provider_name,
                    "error_type": type(classified).__name__,
                    "original_error": type(exc).__name__,
                },
            )
            if classified is exc:
                raise
            raise classified from exc

    async def aclose(self) -> None:
        """Release network resources held by the provider."""
        return None

    def _apply_defaults(self, request: LLMRequest) -> LLMRequest:
        if request.temperature is None:
            request.temperature = self.temperature
        if request.max_tokens is None:
            request.max_tokens = self.max_tokens
        return request

    def _log_request(self, request: LLMRequest) -> None:
        logger.debug(
            f"{self.provider_name} request",
            extra={
                "provider": self.provider_name,
                "message_count": len(request.messages),
                "temperature": request.temperature,
                "max_tokens": request.max_tokens,
            },
        )

    def _log_response(self, response: LLMResponse) -> None:
        logger.debug(
            f"{self.provider_name} response",
            extra={
                "provider": self.provider_name,
                "model": response.model,
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
                "finish_reason": response.finish_reason,
            },
        )
