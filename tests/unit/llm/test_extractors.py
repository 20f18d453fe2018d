"""Tests for response shape extractors."""

import pytest

from chatbi.llm.extractors import extract_text


@pytest.mark.parametrize(
    "payload,expected",
    [
        ({"choices": [{"message": {"content": "openai"}}]}, "openai"),
        ({"choices": [{"text": "legacy"}]}, "legacy"),
        (
            {"choices": [{"message": {"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}}]},
            "ab",
        ),
        ({"content": [{"type": "text", "text": "anthropic"}, {"type": "tool_use", "id": "x"}]}, "anthropic"),
        ({"message": {"role": "assistant", "content": "ollama chat"}}, "ollama chat"),
        ({"response": "ollama generate"}, "ollama generate"),
    ],
)
def test_known_shapes(payload, expected):
    assert extract_text(payload) == expected


def test_empty_text_falls_through_to_next_extractor():
    payload = {"choices": [{"message": {"content": "   "}}], "response": "fallback"}

    assert extract_text(payload) == "fallback"


@pytest.mark.parametrize("payload", [{}, {"choices": []}, {"error": "boom"}, ["not", "a", "dict"]])
def test_unknown_shapes(payload):
    assert extract_text(payload) is None


def test_custom_extractor_order():
    payload = {"response": "second", "choices": [{"message": {"content": "first"}}]}

    assert extract_text(payload, [lambda p: p.get("response")]) == "second"
