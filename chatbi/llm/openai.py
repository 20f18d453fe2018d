"""
OpenAI LLM Provider

Implementation of BaseLLMProvider for OpenAI chat models and any endpoint
that speaks the same SDK protocol (via ``base_url``).
"""

import logging

import openai
import tiktoken
from openai import AsyncOpenAI

from chatbi.llm.base import BaseLLMProvider
from chatbi.llm.models import LLMRequest, LLMResponse, LLMUsage, ModelInfo

logger = logging.getLogger(__name__)


class OpenAIProvider(BaseLLMProvider):
    """OpenAI provider using the official async SDK."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        temperature: float = 0.0,
        max_tokens: int = 2000,
        timeout: float = 20.0,
        base_url: str | None = None,
    ):
        super().__init__(
            provider_name="openai",
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )

        self.model = model
        # retries are owned by the correction loop, not the SDK
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=float(timeout),
            max_retries=0,
        )

        logger.info(f"OpenAI provider initialized with model: {model}", extra={"model": model})

    async def generate(self, request: LLMRequest) -> LLMResponse:
        """Generate completion using the OpenAI chat completions API."""
        request = self._apply_defaults(request)
        self._log_request(request)

        messages = [{"role": msg.role, "content": msg.content} for msg in request.messages]
        try:
            response = await self.client.chat.completions.create(
                model=request.model or self.model,
                messages=messages,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
                **request.metadata,
            )
        except openai.APIError as e:
            logger.error(f"OpenAI API error: {e}")
            raise

        usage = response.usage
        llm_response = LLMResponse(
            content=response.choices[0].message.content or "",
            model=response.model,
            usage=LLMUsage(
                prompt_tokens=usage.prompt_tokens if usage else 0,
                completion_tokens=usage.completion_tokens if usage else 0,
                total_tokens=usage.total_tokens if usage else 0,
            ),
            finish_reason=self._map_finish_reason(response.choices[0].finish_reason),
            provider="openai",
            metadata={"id": response.id},
        )

        self._log_response(llm_response)
        return llm_response

    def count_tokens(self, text: str) -> int:
        """Count tokens using tiktoken."""
        try:
            try:
                encoding = tiktoken.encoding_for_model(self.model)
            except KeyError:
                encoding = tiktoken.get_encoding("cl100k_base")
            return len(encoding.encode(text))
        except Exception as e:
            # encodings are downloaded on first use and may be unavailable offline
            logger.debug(f"tiktoken unavailable, estimating tokens: {e}")
            return super().count_tokens(text)

    def get_model_info(self, model_name: str | None = None) -> ModelInfo:
        model = model_name or self.model
        known = {
            "gpt-4o": ModelInfo(
                name="gpt-4o",
                provider="openai",
                context_window=128000,
                max_output=16384,
                capabilities=["json-mode"],
            ),
            "gpt-4o-mini": ModelInfo(
                name="gpt-4o-mini",
                provider="openai",
                context_window=128000,
                max_output=16384,
                capabilities=["json-mode"],
            ),
        }
        return known.get(
            model,
            ModelInfo(name=model, provider="openai", context_window=128000, max_output=4096),
        )

    async def aclose(self) -> None:
        await self.client.close()

    def _map_finish_reason(self, reason: str | None) -> str:
        if reason in {"stop", "length", "content_filter"}:
            return reason
        return "stop"
