"""
Tolerant JSON extraction from model output.

Models wrap their JSON in prose, fenced blocks, or produce almost-JSON
(trailing commas, single quotes, bare keys, raw newlines in strings).
``extract_json_object`` tries, in order: fenced ```json blocks, the whole
text, then every balanced ``{...}`` span, repairing each candidate once
before giving up on it.
"""

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_FENCED_RE = re.compile(r"```(?:json|JSON)?\s*(\{.*?\})\s*```", re.DOTALL)
_FENCED_SQL_RE = re.compile(r"```(?:sql|SQL)\s*(.*?)```", re.DOTALL)


def balanced_objects(text: str) -> list[str]:
    """Every top-level ``{...}`` span, honouring string literals."""
    spans: list[str] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False
    quote = ""
    for index, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                in_string = False
            continue
        if ch in "\"'" and depth > 0:
            in_string = True
            quote = ch
        elif ch == "{":
            if depth == 0:
                start = index
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start >= 0:
                spans.append(text[start : index + 1])
                start = -1
    return spans


def _escape_newlines_in_strings(text: str) -> str:
    out: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            elif ch == "\n":
                out.append("\\n")
                continue
            elif ch == "\r":
                continue
            elif ch == "\t":
                out.append("\\t")
                continue
        elif ch == '"':
            in_string = True
        out.append(ch)
    return "".join(out)


def repair_json(text: str) -> str:
    """Best-effort fixes for common near-JSON mistakes."""
    fixed = text.strip()
    fixed = re.sub(r",\s*([}\]])", r"\1", fixed)
    if "'" in fixed and '"' not in fixed:
        fixed = fixed.replace("'", '"')
    else:
        fixed = re.sub(r"(?<=[{,\s])'([^'\"]+?)'\s*:", r'"\1":', fixed)
        fixed = re.sub(r":\s*'([^'\"]*?)'(?=\s*[,}])", r': "\1"', fixed)
    fixed = re.sub(r"([{,]\s*)([A-Za-z_][\w]*)\s*:", r'\1"\2":', fixed)
    return _escape_newlines_in_strings(fixed)


def _loads(candidate: str) -> dict[str, Any] | None:
    for attempt in (candidate, repair_json(candidate)):
        try:
            value = json.loads(attempt)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    return None


def extract_json_object(text: str | None) -> dict[str, Any] | None:
    """Return the first parseable JSON object in ``text``, or None."""
    if not text or not text.strip():
        return None

    for match in _FENCED_RE.finditer(text):
        value = _loads(match.group(1))
        if value is not None:
            return value

    stripped = text.strip()
    if stripped.startswith("{"):
        value = _loads(stripped)
        if value is not None:
            return value

    for candidate in balanced_objects(text):
        value = _loads(candidate)
        if value is not None:
            return value

    logger.debug("No JSON object found in model output")
    return None


def extract_fenced_sql(text: str | None) -> str | None:
    """SQL from a ```sql fenced block, if the model answered that way."""
    if not text:
        return None
    match = _FENCED_SQL_RE.search(text)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return None
