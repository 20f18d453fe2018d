"""
Tests for LLM request/response models.

Tests Pydantic models for model provider interactions.
"""

import pytest
from pydantic import ValidationError

from chatbi.llm.models import LLMMessage, LLMRequest, LLMResponse, LLMUsage, ModelInfo


class TestLLMMessage:
    """Test LLMMessage model."""

    def test_all_roles(self):
        for role in ["system", "user", "assistant"]:
            assert LLMMessage(role=role, content="Test").role == role

    def test_invalid_role(self):
        with pytest.raises(ValidationError):
            LLMMessage(role="tool", content="Test")

    def test_empty_content_rejected(self):
        with pytest.raises(ValidationError):
            LLMMessage(role="user", content="")


class TestLLMRequest:
    """Test LLMRequest model."""

    def test_defaults_are_unset(self):
        request = LLMRequest(messages=[LLMMessage(role="user", content="Hi")])
        assert request.temperature is None
        assert request.max_tokens is None
        assert request.metadata == {}

    def test_requires_a_message(self):
        with pytest.raises(ValidationError):
            LLMRequest(messages=[])

    @pytest.mark.parametrize("temperature", [-0.1, 2.1])
    def test_temperature_bounds(self, temperature):
        with pytest.raises(ValidationError):
            LLMRequest(messages=[LLMMessage(role="user", content="Hi")], temperature=temperature)


class TestLLMResponse:
    """Test LLMResponse and supporting models."""

    def test_defaults(self):
        response = LLMResponse(content="ok", model="m", provider="openai")
        assert response.usage == LLMUsage()
        assert response.finish_reason == "stop"

    def test_invalid_finish_reason(self):
        with pytest.raises(ValidationError):
            LLMResponse(content="ok", model="m", provider="openai", finish_reason="tool_calls")

    def test_model_info_requires_positive_window(self):
        with pytest.raises(ValidationError):
            ModelInfo(name="m", provider="local", context_window=0, max_output=1)
