"""
Gateway LLM Provider

Generic chat-completions client for proxies and gateways (OpenAI-compatible
relays, Anthropic-style relays, unauthenticated edge gateways). Only the
authentication header differs between dialects; the body is always the
chat-completions shape and the answer is read with the ordered extractors.
"""

import logging
from typing import Literal

import httpx

from chatbi.llm.base import BaseLLMProvider
from chatbi.llm.extractors import extract_text
from chatbi.llm.models import LLMRequest, LLMResponse, LLMUsage, ModelInfo

logger = logging.getLogger(__name__)

AuthDialect = Literal["bearer", "x-api-key", "none"]

ANTHROPIC_VERSION = "2023-06-01"


def build_auth_headers(dialect: AuthDialect, api_key: str | None) -> dict[str, str]:
    """Headers for a gateway dialect. No key means no auth header."""
    headers = {"Content-Type": "application/json"}
    if not api_key or dialect == "none":
        return headers
    if dialect == "x-api-key":
        headers["x-api-key"] = api_key
        headers["anthropic-version"] = ANTHROPIC_VERSION
    else:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def build_completions_url(base_url: str) -> str:
    base = base_url.rstrip("/")
    if base.endswith("/chat/completions"):
        return base
    return f"{base}/chat/completions"


class GatewayProvider(BaseLLMProvider):
    """Chat-completions over plain HTTP with a configurable auth dialect."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str | None = None,
        auth: AuthDialect = "bearer",
        temperature: float = 0.0,
        max_tokens: int = 2000,
        timeout: float = 20.0,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(
            provider_name="gateway",
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
        self.url = build_completions_url(base_url)
        self.model = model
        self.auth = auth
        self.client = client or httpx.AsyncClient(
            timeout=float(timeout), headers=build_auth_headers(auth, api_key)
        )

        logger.info(
            f"Gateway provider initialized: {self.url} ({auth}) with model: {model}",
            extra={"url": self.url, "auth": auth, "model": model},
        )

    async def generate(self, request: LLMRequest) -> LLMResponse:
        request = self._apply_defaults(request)
        self._log_request(request)

        response = await self.client.post(
            self.url,
            json={
                "model": request.model or self.model,
                "messages": [
                    {"role": msg.role, "content": msg.content} for msg in request.messages
                ],
                "temperature": request.temperature,
                "max_tokens": request.max_tokens,
                **request.metadata,
            },
        )
        response.raise_for_status()
        payload = response.json()

        usage = payload.get("usage") or {}
        prompt_tokens = usage.get("prompt_tokens") or usage.get("input_tokens") or 0
        completion_tokens = usage.get("completion_tokens") or usage.get("output_tokens") or 0
        llm_response = LLMResponse(
            content=extract_text(payload) or "",
            model=payload.get("model") or request.model or self.model,
            usage=LLMUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            provider="gateway",
            metadata={"url": self.url},
        )
        self._log_response(llm_response)
        return llm_response

    def get_model_info(self, model_name: str | None = None) -> ModelInfo:
        return ModelInfo(
            name=model_name or self.model,
            provider="gateway",
            context_window=32768,
            max_output=4096,
        )

    async def aclose(self) -> None:
        await self.client.aclose()
