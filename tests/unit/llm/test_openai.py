"""
Tests for OpenAI Provider.

Tests OpenAI provider implementation with mocked API calls.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chatbi.llm.models import LLMMessage, LLMRequest
from chatbi.llm.openai import OpenAIProvider


@pytest.fixture
def provider():
    """Create OpenAI provider instance."""
    return OpenAIProvider(
        api_key="sk-test-key-1234567890abcdefghij",
        model="gpt-4o",
        temperature=0.0,
        max_tokens=2000,
        timeout=30,
    )


def _completion(content="Hello! How can I help?", finish_reason="stop"):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    response.choices[0].finish_reason = finish_reason
    response.model = "gpt-4o"
    response.usage.prompt_tokens = 10
    response.usage.completion_tokens = 5
    response.usage.total_tokens = 15
    response.id = "chatcmpl-123"
    return response


class TestOpenAIProviderInit:
    """Test OpenAI provider initialization."""

    def test_initialization(self, provider):
        assert provider.model == "gpt-4o"
        assert provider.temperature == 0.0
        assert provider.max_tokens == 2000
        assert provider.timeout == 30
        assert provider.provider_name == "openai"

    def test_sdk_retries_disabled(self, provider):
        assert provider.client.max_retries == 0


class TestGenerate:
    """Test generate method."""

    @pytest.mark.asyncio
    async def test_successful_generation(self, provider):
        with patch.object(
            provider.client.chat.completions,
            "create",
            new_callable=AsyncMock,
            return_value=_completion(),
        ):
            response = await provider.generate(
                LLMRequest(messages=[LLMMessage(role="user", content="Hello!")])
            )

        assert response.content == "Hello! How can I help?"
        assert response.model == "gpt-4o"
        assert response.usage.total_tokens == 15
        assert response.finish_reason == "stop"
        assert response.provider == "openai"
        assert response.metadata == {"id": "chatcmpl-123"}

    @pytest.mark.asyncio
    async def test_applies_defaults(self, provider):
        mock_create = AsyncMock(return_value=_completion())

        with patch.object(provider.client.chat.completions, "create", mock_create):
            await provider.generate(LLMRequest(messages=[LLMMessage(role="user", content="Test")]))

        call_kwargs = mock_create.call_args.kwargs
        assert call_kwargs["temperature"] == 0.0
        assert call_kwargs["max_tokens"] == 2000
        assert call_kwargs["model"] == "gpt-4o"

    @pytest.mark.asyncio
    async def test_request_overrides_defaults(self, provider):
        mock_create = AsyncMock(return_value=_completion())

        with patch.object(provider.client.chat.completions, "create", mock_create):
            await provider.generate(
                LLMRequest(
                    messages=[LLMMessage(role="user", content="Test")],
                    temperature=0.7,
                    max_tokens=500,
                )
            )

        call_kwargs = mock_create.call_args.kwargs
        assert call_kwargs["temperature"] == 0.7
        assert call_kwargs["max_tokens"] == 500

    @pytest.mark.asyncio
    async def test_unknown_finish_reason_maps_to_stop(self, provider):
        with patch.object(
            provider.client.chat.completions,
            "create",
            new_callable=AsyncMock,
            return_value=_completion(content=None, finish_reason="tool_calls"),
        ):
            response = await provider.generate(
                LLMRequest(messages=[LLMMessage(role="user", content="Hello!")])
            )

        assert response.content == ""
        assert response.finish_reason == "stop"


class TestGetModelInfo:
    """Test get_model_info method."""

    def test_known_model(self, provider):
        info = provider.get_model_info("gpt-4o")
        assert info.context_window == 128000
        assert info.max_output == 16384
        assert "json-mode" in info.capabilities

    def test_unknown_model(self, provider):
        info = provider.get_model_info("gpt-x")
        assert info.name == "gpt-x"
        assert info.max_output == 4096


class TestCountTokens:
    """Test count_tokens method."""

    def test_uses_model_encoding(self, provider):
        encoding = MagicMock()
        encoding.encode.return_value = [1, 2, 3]
        with patch("chatbi.llm.openai.tiktoken.encoding_for_model", return_value=encoding) as lookup:
            assert provider.count_tokens("统计订单") == 3
        lookup.assert_called_once_with("gpt-4o")

    def test_unknown_model_uses_base_encoding(self, provider):
        encoding = MagicMock()
        encoding.encode.return_value = [1]
        with (
            patch("chatbi.llm.openai.tiktoken.encoding_for_model", side_effect=KeyError("x")),
            patch("chatbi.llm.openai.tiktoken.get_encoding", return_value=encoding) as fallback,
        ):
            assert provider.count_tokens("hi") == 1
        fallback.assert_called_once_with("cl100k_base")

    def test_estimates_when_encoding_unavailable(self, provider):
        with patch(
            "chatbi.llm.openai.tiktoken.encoding_for_model", side_effect=OSError("offline")
        ):
            assert provider.count_tokens("x" * 40) == 10
