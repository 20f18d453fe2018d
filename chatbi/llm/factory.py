"""
LLM Provider Factory

Creates provider instances from configuration, with per-component overrides.
"""

import logging
from typing import Literal

from chatbi.config import LLMSettings
from chatbi.llm.anthropic import AnthropicProvider
from chatbi.llm.base import BaseLLMProvider
from chatbi.llm.gateway import GatewayProvider
from chatbi.llm.local import LocalProvider
from chatbi.llm.openai import OpenAIProvider

logger = logging.getLogger(__name__)

ProviderType = Literal["openai", "anthropic", "local", "gateway"]


class LLMProviderFactory:
    """Factory for creating model provider instances."""

    PROVIDERS = {
        "openai": OpenAIProvider,
        "anthropic": AnthropicProvider,
        "local": LocalProvider,
        "gateway": GatewayProvider,
    }

    @staticmethod
    def create_provider(provider_type: ProviderType, config: LLMSettings) -> BaseLLMProvider:
        """
        Create a provider instance.

        Raises:
            ValueError: If the provider type is unknown or required config is missing
        """
        if provider_type not in LLMProviderFactory.PROVIDERS:
            raise ValueError(
                f"Unknown provider type: {provider_type}. "
                f"Available providers: {list(LLMProviderFactory.PROVIDERS.keys())}"
            )

        logger.info(f"Creating {provider_type} provider", extra={"provider": provider_type})

        if provider_type == "openai":
            return LLMProviderFactory._create_openai(config)
        if provider_type == "anthropic":
            return LLMProviderFactory._create_anthropic(config)
        if provider_type == "local":
            return LLMProviderFactory._create_local(config)
        return LLMProviderFactory._create_gateway(config)

    @staticmethod
    def create_default_provider(config: LLMSettings) -> BaseLLMProvider:
        return LLMProviderFactory.create_provider(config.default_provider, config)

    @staticmethod
    def create_component_provider(component: str, config: LLMSettings) -> BaseLLMProvider:
        """
        Create the provider for a pipeline component ("sql", "translation",
        "analysis"), honouring ``<component>_provider`` overrides.
        """
        override = getattr(config, f"{component}_provider", None)
        provider_type = override or config.default_provider
        logger.info(
            f"Creating provider for {component}",
            extra={"component": component, "provider": provider_type, "has_override": bool(override)},
        )
        return LLMProviderFactory.create_provider(provider_type, config)

    @staticmethod
    def _create_openai(config: LLMSettings) -> OpenAIProvider:
        if not config.openai_api_key:
            raise ValueError("OpenAI API key is required but not configured")
        return OpenAIProvider(
            api_key=config.openai_api_key,
            model=config.openai_model,
            base_url=config.openai_base_url,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout_for("openai"),
        )

    @staticmethod
    def _create_anthropic(config: LLMSettings) -> AnthropicProvider:
        if not config.anthropic_api_key:
            raise ValueError("Anthropic API key is required but not configured")
        return AnthropicProvider(
            api_key=config.anthropic_api_key,
            model=config.anthropic_model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout_for("anthropic"),
        )

    @staticmethod
    def _create_local(config: LLMSettings) -> LocalProvider:
        return LocalProvider(
            base_url=config.local_base_url,
            model=config.local_model,
            api_key=config.local_api_key,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout_for("local"),
        )

    @staticmethod
    def _create_gateway(config: LLMSettings) -> GatewayProvider:
        if not config.gateway_base_url:
            raise ValueError("Gateway base URL is required but not configured")
        return GatewayProvider(
            base_url=config.gateway_base_url,
            model=config.gateway_model,
            api_key=config.gateway_api_key,
            auth=config.gateway_auth,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout_for("gateway"),
        )
