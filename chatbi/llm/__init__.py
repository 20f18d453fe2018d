"""
LLM Provider Module

Multi-provider model abstraction supporting OpenAI, Anthropic, local (Ollama)
and generic chat-completions gateways.

Usage:
    from chatbi.llm import LLMProviderFactory, LLMRequest, LLMMessage
    from chatbi.config import get_settings

    provider = LLMProviderFactory.create_default_provider(get_settings().llm)
    response = await provider.complete(
        LLMRequest(messages=[LLMMessage(role="user", content="Hello!")])
    )
"""

from chatbi.llm.anthropic import AnthropicProvider
from chatbi.llm.base import BaseLLMProvider
from chatbi.llm.errors import (
    ModelProviderAuthError,
    ModelProviderError,
    ModelProviderNetworkError,
    ModelProviderTimeout,
)
from chatbi.llm.factory import LLMProviderFactory
from chatbi.llm.gateway import GatewayProvider
from chatbi.llm.local import LocalProvider
from chatbi.llm.models import LLMMessage, LLMRequest, LLMResponse, LLMUsage, ModelInfo
from chatbi.llm.openai import OpenAIProvider

__all__ = [
    "BaseLLMProvider",
    "LLMMessage",
    "LLMRequest",
    "LLMResponse",
    "LLMUsage",
    "ModelInfo",
    "LLMProviderFactory",
    "OpenAIProvider",
    "AnthropicProvider",
    "LocalProvider",
    "GatewayProvider",
    "ModelProviderError",
    "ModelProviderTimeout",
    "ModelProviderNetworkError",
    "ModelProviderAuthError",
]
