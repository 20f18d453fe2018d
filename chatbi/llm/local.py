"""
Local LLM Provider

Implementation of BaseLLMProvider for local model servers. Ollama's native
``/api/chat`` endpoint is tried first; servers that do not expose it (vLLM,
llama.cpp) are reached through the OpenAI-compatible ``/v1/chat/completions``.
"""

import logging

import httpx

from chatbi.llm.base import BaseLLMProvider
from chatbi.llm.extractors import extract_text
from chatbi.llm.models import LLMRequest, LLMResponse, LLMUsage, ModelInfo

logger = logging.getLogger(__name__)


class LocalProvider(BaseLLMProvider):
    """Local model provider (Ollama first, OpenAI-compatible fallback)."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "qwen2.5:7b",
        temperature: float = 0.0,
        max_tokens: int = 2000,
        timeout: float = 60.0,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(
            provider_name="local",
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )

        self.base_url = base_url.rstrip("/")
        if self.base_url.endswith("/v1"):
            self.base_url = self.base_url[: -len("/v1")]
        self.model = model
        headers = {"Content-Type": "application/json"}
        # Ollama is unauthenticated by default; send a token only when one is configured
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = client or httpx.AsyncClient(timeout=float(timeout), headers=headers)

        logger.info(
            f"Local provider initialized: {self.base_url} with model: {model}",
            extra={"base_url": self.base_url, "model": model},
        )

    async def generate(self, request: LLMRequest) -> LLMResponse:
        """Generate completion using the local model server."""
        request = self._apply_defaults(request)
        self._log_request(request)

        messages = [{"role": msg.role, "content": msg.content} for msg in request.messages]
        model = request.model or self.model

        try:
            payload = await self._call_ollama(
                {
                    "model": model,
                    "messages": messages,
                    "stream": False,
                    "options": {
                        "temperature": request.temperature,
                        "num_predict": request.max_tokens,
                    },
                }
            )
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code != 404:
                raise
            logger.debug("Ollama /api/chat not available, using OpenAI-compatible endpoint")
            payload = await self._call_openai_compatible(
                {
                    "model": model,
                    "messages": messages,
                    "temperature": request.temperature,
                    "max_tokens": request.max_tokens,
                }
            )

        prompt_tokens = payload.get("prompt_eval_count") or payload.get("usage", {}).get(
            "prompt_tokens", 0
        )
        completion_tokens = payload.get("eval_count") or payload.get("usage", {}).get(
            "completion_tokens", 0
        )
        llm_response = LLMResponse(
            content=extract_text(payload) or "",
            model=payload.get("model", model),
            usage=LLMUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            provider="local",
            metadata={"base_url": self.base_url},
        )

        self._log_response(llm_response)
        return llm_response

    def get_model_info(self, model_name: str | None = None) -> ModelInfo:
        return ModelInfo(
            name=model_name or self.model,
            provider="local",
            context_window=8192,
            max_output=2048,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _call_ollama(self, payload: dict) -> dict:
        response = await self.client.post(f"{self.base_url}/api/chat", json=payload)
        response.raise_for_status()
        return response.json()

    async def _call_openai_compatible(self, payload: dict) -> dict:
        response = await self.client.post(f"{self.base_url}/v1/chat/completions", json=payload)
        response.raise_for_status()
        return response.json()
