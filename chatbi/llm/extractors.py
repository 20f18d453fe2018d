"""
Response shape extractors.

Chat-completion style services disagree on where the generated text lives.
Each extractor knows one shape; they are tried in order and the first
non-empty string wins.
"""

from collections.abc import Callable
from typing import Any

Extractor = Callable[[dict[str, Any]], str | None]


def _text_from_content(content: Any) -> str | None:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type", "text") == "text"
        ]
        joined = "".join(part for part in parts if isinstance(part, str))
        return joined or None
    return None


def extract_openai_choices(payload: dict[str, Any]) -> str | None:
    """OpenAI-compatible: ``choices[0].message.content``."""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0] or {}
    message = first.get("message") or {}
    text = _text_from_content(message.get("content"))
    if text:
        return text
    # legacy completions shape
    return first.get("text") if isinstance(first.get("text"), str) else None


def extract_anthropic_content(payload: dict[str, Any]) -> str | None:
    """Anthropic messages API: top-level ``content`` string or text blocks."""
    return _text_from_content(payload.get("content"))


def extract_ollama_message(payload: dict[str, Any]) -> str | None:
    """Ollama ``/api/chat``: ``message.content``."""
    message = payload.get("message")
    if isinstance(message, dict):
        return _text_from_content(message.get("content"))
    if isinstance(message, str):
        return message
    return None


def extract_ollama_response(payload: dict[str, Any]) -> str | None:
    """Ollama ``/api/generate``: ``response``."""
    response = payload.get("response")
    return response if isinstance(response, str) else None


RESPONSE_EXTRACTORS: list[Extractor] = [
    extract_openai_choices,
    extract_anthropic_content,
    extract_ollama_message,
    extract_ollama_response,
]


def extract_text(
    payload: dict[str, Any], extractors: list[Extractor] | None = None
) -> str | None:
    """Return the first non-empty text any extractor finds, else None."""
    if not isinstance(payload, dict):
        return None
    for extractor in extractors or RESPONSE_EXTRACTORS:
        text = extractor(payload)
        if text and text.strip():
            return text
    return None
