"""
SQLGenerationAgent

Sends the composed system prompt plus the conversation to the configured
model and parses the answer into a ``GeneratedQuery``.

Parsing is tolerant because models rarely follow the output contract
exactly:

    1. fenced ```json block
    2. bare brace-matched object
    3. the same candidates after JSON repair
    4. a ```sql block or bare SELECT in prose
    5. execution-plan recovery: prose that names a whitelisted table and
       announces what it is going to query becomes
       ``SELECT <whitelisted columns> FROM <table>``
"""

import logging
import re
from typing import Any

from pydantic import BaseModel, Field

from chatbi.agents.base import BaseAgent
from chatbi.llm.base import BaseLLMProvider
from chatbi.llm.models import LLMMessage, LLMRequest
from chatbi.models.agent import AgentInput, AgentOutput, SQLGenerationError
from chatbi.models.schema import FieldWhitelist
from chatbi.utils.json_parser import extract_fenced_sql, extract_json_object

logger = logging.getLogger(__name__)

INTENT_MARKERS = (
    "我将",
    "我会",
    "将会",
    "我们将",
    "接下来",
    "首先",
    "需要查询",
    "我需要",
    "计划",
    "准备",
    "打算",
    "i will",
    "i'll",
    "let me",
    "i am going to",
    "i'm going to",
    "we will",
    "first,",
)

_BARE_SELECT_RE = re.compile(r"(?is)(?:^|\n)\s*((?:WITH|SELECT)\b.+?)(?:;|\n\s*\n|$)")


class GeneratedQuery(BaseModel):
    """One parsed model answer."""

    explanation: str = ""
    sql: str | None = None
    tool_call: dict[str, Any] | None = None
    reasoning: str | None = None
    visualization: dict[str, Any] | None = None
    recovered: bool = Field(
        default=False, description="SQL was synthesized from an execution-plan answer"
    )
    raw: str = ""


def _clean_sql_value(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    sql = value.strip()
    if sql.startswith("```"):
        sql = re.sub(r"^```(?:sql)?\s*|\s*```$", "", sql, flags=re.IGNORECASE).strip()
    sql = sql.rstrip(";").strip()
    return sql or None


def _from_payload(payload: dict[str, Any], raw: str) -> GeneratedQuery:
    tool_call = payload.get("toolCall") or payload.get("tool_call")
    sql = _clean_sql_value(payload.get("sql") or payload.get("query"))
    if sql is None and isinstance(tool_call, dict):
        sql = _clean_sql_value(tool_call.get("sql"))
    visualization = payload.get("visualization")
    return GeneratedQuery(
        explanation=str(payload.get("explanation") or payload.get("reasoning") or ""),
        sql=sql,
        tool_call=tool_call if isinstance(tool_call, dict) else None,
        reasoning=payload.get("reasoning") if isinstance(payload.get("reasoning"), str) else None,
        visualization=visualization if isinstance(visualization, dict) else None,
        raw=raw,
    )


def recover_execution_plan(text: str, whitelist: FieldWhitelist | None) -> str | None:
    """
    Turn a "here is what I will query" answer into a plain SELECT over the
    table it names. Returns None unless both a whitelisted table and intent
    language are present.
    """
    if not text or whitelist is None or whitelist.is_empty:
        return None
    lowered = text.lower()
    if not any(marker in lowered for marker in INTENT_MARKERS):
        return None

    best: tuple[int, str] | None = None
    for table in whitelist.table_names():
        short = table.lower().rsplit(".", 1)[-1]
        match = re.search(rf"(?<![\w]){re.escape(short)}(?![\w])", lowered)
        if match and (best is None or match.start() < best[0]):
            best = (match.start(), table)
    if best is None:
        return None

    table = best[1]
    columns = whitelist.columns_for(table)
    if not columns:
        return None
    logger.info(f"Recovered SQL from execution-plan answer over table {table}")
    return f"SELECT {', '.join(columns)} FROM {table}"


def parse_generation_response(raw: str, whitelist: FieldWhitelist | None = None) -> GeneratedQuery:
    """Parse one model answer. Never raises; an unusable answer has ``sql=None``."""
    text = raw or ""
    payload = extract_json_object(text)
    if payload is not None:
        generated = _from_payload(payload, text)
        explicit_null = "sql" in payload and payload.get("sql") in (None, "", "null")
        if generated.sql or generated.tool_call or explicit_null:
            return generated
        recovered = recover_execution_plan(
            " ".join(filter(None, [generated.explanation, generated.reasoning, text])), whitelist
        )
        if recovered:
            return generated.model_copy(update={"sql": recovered, "recovered": True})
        return generated

    fenced = extract_fenced_sql(text)
    if fenced:
        return GeneratedQuery(explanation="", sql=_clean_sql_value(fenced), raw=text)

    bare = _BARE_SELECT_RE.search(text)
    if bare:
        prose = text[: bare.start()].strip()
        return GeneratedQuery(explanation=prose, sql=_clean_sql_value(bare.group(1)), raw=text)

    recovered = recover_execution_plan(text, whitelist)
    if recovered:
        return GeneratedQuery(explanation=text.strip(), sql=recovered, recovered=True, raw=text)

    return GeneratedQuery(explanation=text.strip(), raw=text)


class SQLGenerationAgent(BaseAgent):
    """
    One model round trip per call.

    Input context:
        system_prompt: Composed system prompt (required)
        history: Prior chat turns as {"role", "content"} dicts, trimmed oldest
            first to ``history_token_budget`` tokens
        whitelist: FieldWhitelist used for execution-plan recovery

    Output data:
        generated: GeneratedQuery
    """

    def __init__(self, llm_provider: BaseLLMProvider, history_token_budget: int = 0):
        super().__init__(name="SQLGenerationAgent", max_retries=0)
        self.llm = llm_provider
        self.history_token_budget = history_token_budget

    def fit_history(self, history: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Most recent turns whose combined token count fits the budget."""
        if not self.history_token_budget:
            return list(history)
        kept: list[dict[str, Any]] = []
        used = 0
        for turn in reversed(history):
            used += self.llm.count_tokens(str(turn.get("content") or ""))
            if used > self.history_token_budget:
                break
            kept.append(turn)
        if len(kept) < len(history):
            logger.debug(f"Dropped {len(history) - len(kept)} old turn(s) over the token budget")
        return list(reversed(kept))

    async def execute(self, input: AgentInput) -> AgentOutput:
        system_prompt = input.context.get("system_prompt")
        if not system_prompt:
            raise SQLGenerationError(self.name, "Missing system prompt", recoverable=False)

        messages = [LLMMessage(role="system", content=system_prompt)]
        for turn in self.fit_history(input.context.get("history") or []):
            content = str(turn.get("content") or "").strip()
            role = turn.get("role")
            if content and role in ("user", "assistant"):
                messages.append(LLMMessage(role=role, content=content))
        if messages[-1].role != "user" or messages[-1].content != input.query:
            messages.append(LLMMessage(role="user", content=input.query))

        response = await self.llm.complete(LLMRequest(messages=messages))
        self._track_llm_call(tokens=response.usage.total_tokens or None)

        if not response.content.strip():
            raise SQLGenerationError(
                self.name,
                "模型返回了空响应",
                recoverable=False,
                context={"provider": response.provider, "finish_reason": response.finish_reason},
            )

        generated = parse_generation_response(response.content, input.context.get("whitelist"))
        logger.debug(
            f"Parsed model answer (sql={'yes' if generated.sql else 'no'}, "
            f"recovered={generated.recovered})"
        )
        return AgentOutput(
            success=True,
            data={"generated": generated},
            metadata=self._create_metadata(),
        )
