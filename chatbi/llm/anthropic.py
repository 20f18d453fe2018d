"""
Anthropic LLM Provider

Implementation of BaseLLMProvider for Anthropic's Claude models.
"""

import logging

from anthropic import AsyncAnthropic

from chatbi.llm.base import BaseLLMProvider
from chatbi.llm.models import LLMRequest, LLMResponse, LLMUsage, ModelInfo

logger = logging.getLogger(__name__)


class AnthropicProvider(BaseLLMProvider):
    """Anthropic (Claude) provider using the official async SDK."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-3-5-sonnet-20241022",
        temperature: float = 0.0,
        max_tokens: int = 2000,
        timeout: float = 20.0,
    ):
        super().__init__(
            provider_name="anthropic",
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )

        self.model = model
        self.client = AsyncAnthropic(api_key=api_key, timeout=float(timeout), max_retries=0)

        logger.info(f"Anthropic provider initialized with model: {model}", extra={"model": model})

    async def generate(self, request: LLMRequest) -> LLMResponse:
        """Generate completion using the Anthropic messages API."""
        request = self._apply_defaults(request)
        self._log_request(request)

        # system prompt travels separately
        system_parts = []
        messages = []
        for msg in request.messages:
            if msg.role == "system":
                system_parts.append(msg.content)
            else:
                messages.append({"role": msg.role, "content": msg.content})

        kwargs = {}
        if system_parts:
            kwargs["system"] = "\n\n".join(system_parts)

        response = await self.client.messages.create(
            model=request.model or self.model,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            messages=messages,
            **kwargs,
        )

        text = "".join(
            getattr(block, "text", "") for block in response.content if block.type == "text"
        )
        llm_response = LLMResponse(
            content=text,
            model=response.model,
            usage=LLMUsage(
                prompt_tokens=response.usage.input_tokens,
                completion_tokens=response.usage.output_tokens,
                total_tokens=response.usage.input_tokens + response.usage.output_tokens,
            ),
            finish_reason=self._map_finish_reason(response.stop_reason),
            provider="anthropic",
            metadata={"id": response.id},
        )

        self._log_response(llm_response)
        return llm_response

    def get_model_info(self, model_name: str | None = None) -> ModelInfo:
        model = model_name or self.model
        return ModelInfo(
            name=model,
            provider="anthropic",
            context_window=200000,
            max_output=8192,
        )

    async def aclose(self) -> None:
        await self.client.close()

    def _map_finish_reason(self, reason: str | None) -> str:
        if reason == "max_tokens":
            return "length"
        return "stop"
