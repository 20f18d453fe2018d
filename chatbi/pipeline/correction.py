"""
SelfCorrectionLoop

A bounded state machine around generation, validation and execution:

    DRAFT -> VALIDATED -> EXECUTING -> SUCCEEDED
                |              |
                |              +-> EXECUTION_ERROR  (unknown column/table)
                |              +-> SCHEMA_ONLY      (metadata instead of data)
                +-> SCHEMA_MISMATCH / JOIN / STATEMENT

Each failure category may trigger at most one regeneration per request, and
all model calls together stay within ``max_round_trips``. There is no
recursion: a regeneration simply moves the machine back to DRAFT.
"""

import logging
import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from chatbi.agents.executor import ExecutionGateway, ExecutionOutcome
from chatbi.agents.generator import GeneratedQuery, SQLGenerationAgent
from chatbi.agents.join_checker import CrossTableNeed, assess_join_requirement
from chatbi.agents.validator import (
    expand_select_star,
    reads_metadata,
    validate_schema,
    validate_sql,
)
from chatbi.models.agent import (
    AgentInput,
    DatabaseExecutionError,
    SchemaOnlyResultUnrecoverable,
    SQLRejectedError,
    WhitelistEmptyError,
)
from chatbi.models.chat import UserContext, WorkProcess
from chatbi.models.policy import CompiledPolicy
from chatbi.models.schema import FieldWhitelist, Table
from chatbi.prompts.composer import PreconfiguredQuery, PromptComposer
from chatbi.schema.introspector import is_schema_metadata_result, normalize_schema_rows
from chatbi.schema.whitelist import build_field_whitelist
from chatbi.security.policy import filter_schema, filter_whitelist

logger = logging.getLogger(__name__)

UNKNOWN_IDENTIFIER_PATTERNS = (
    # MySQL: Unknown column 'c.emial' in 'field list'
    re.compile(r"Unkn?own column\s+['`\"]([^'`\"]+)['`\"]", re.IGNORECASE),
    # PostgreSQL: column "emial" does not exist / column c.emial does not exist
    re.compile(r"column\s+\"?([\w.]+)\"?\s+does not exist", re.IGNORECASE),
    # PostgreSQL: relation "custmers" does not exist
    re.compile(r"relation\s+\"?([\w.]+)\"?\s+does not exist", re.IGNORECASE),
    # MySQL: Table 'shop.custmers' doesn't exist
    re.compile(r"Table\s+['`\"]([^'`\"]+)['`\"]\s+doesn'?t exist", re.IGNORECASE),
    re.compile(r"no such (?:column|table):\s*([\w.]+)", re.IGNORECASE),
)

NO_MATCHING_TABLE_MESSAGE = "未找到与您的问题匹配的数据表，请换一种方式描述您要查询的数据"


class CorrectionState(str, Enum):
    DRAFT = "draft"
    VALIDATED = "validated"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    NO_SQL = "no_sql"


class CorrectionCategory(str, Enum):
    JOIN = "join"
    STATEMENT = "statement"
    SCHEMA_MISMATCH = "schema_mismatch"
    EXECUTION_ERROR = "execution_error"
    SCHEMA_ONLY = "schema_only"


class CorrectionRequest(BaseModel):
    """Inputs for one question."""

    question: str
    system_prompt: str
    history: list[dict[str, str]] = Field(default_factory=list)
    whitelist: FieldWhitelist
    schema_tables: list[Table] = Field(default_factory=list)
    cross_table: CrossTableNeed | None = None
    tools: list[PreconfiguredQuery] = Field(default_factory=list)
    policy: CompiledPolicy
    user: UserContext
    connector: Any = Field(..., description="BaseConnector for the target database")

    model_config = ConfigDict(arbitrary_types_allowed=True)


class CorrectionOutcome(BaseModel):
    """Where the loop ended."""

    state: CorrectionState
    generated: GeneratedQuery
    sql: str | None = None
    execution: ExecutionOutcome | None = None
    whitelist: FieldWhitelist
    round_trips: int = 0
    corrections: list[CorrectionCategory] = Field(default_factory=list)
    second_query: bool = False


def extract_unknown_identifier(message: str | None) -> str | None:
    """The offending column/table named by an unknown-identifier driver error."""
    if not message:
        return None
    for pattern in UNKNOWN_IDENTIFIER_PATTERNS:
        match = pattern.search(message)
        if match:
            return match.group(1).strip()
    return None


def with_whitelist_guidance(message: str, whitelist: FieldWhitelist) -> str:
    text = whitelist.render_text()
    if not text:
        return message
    return f"{message}\n\n当前可用的表和字段：\n{text}"


def no_column_explanation(explanation: str, whitelist: FieldWhitelist) -> str:
    """Make sure a ``sql: null`` answer lists the columns that do exist."""
    text = whitelist.render_text()
    base = explanation.strip() or "根据当前可用的字段，无法回答这个问题。"
    columns = whitelist.all_columns()
    if text and not any(column in base for column in columns):
        return f"{base}\n\n可用的字段如下：\n{text}"
    return base


class _Budget:
    """Round-trip and per-category bookkeeping for one request."""

    def __init__(self, max_round_trips: int):
        self.max_round_trips = max_round_trips
        self.round_trips = 0
        self.used: list[CorrectionCategory] = []

    def can_regenerate(self, category: CorrectionCategory) -> bool:
        return category not in self.used and self.round_trips < self.max_round_trips


class SelfCorrectionLoop:
    """
    Drives one question from first draft to an executed (or explained) result.

    Args:
        generator: Model round trip
        composer: Correction prompt templates
        gateway: Policy-enforcing executor
        max_round_trips: Upper bound on model calls, first draft included
        join_regeneration_enabled: Allow the JOIN regeneration pass
    """

    def __init__(
        self,
        generator: SQLGenerationAgent,
        composer: PromptComposer,
        gateway: ExecutionGateway,
        max_round_trips: int = 4,
        join_regeneration_enabled: bool = True,
    ):
        self.generator = generator
        self.composer = composer
        self.gateway = gateway
        self.max_round_trips = max_round_trips
        self.join_regeneration_enabled = join_regeneration_enabled

    async def run(
        self, request: CorrectionRequest, work_process: WorkProcess | None = None
    ) -> CorrectionOutcome:
        """
        Raises:
            SQLRejectedError: Statement-type gate failed after its correction
            SQLPermissionError / AccessDeniedError: Access policy blocked the SQL
            DatabaseExecutionError: Database error, with whitelist guidance
            SchemaOnlyResultUnrecoverable: Second-query sub-flow failed
        """
        work_process = work_process if work_process is not None else WorkProcess()
        budget = _Budget(self.max_round_trips)
        conversation = list(request.history)
        whitelist = request.whitelist

        work_process.add("正在生成 SQL 查询")
        generated = await self._generate(request, conversation, request.question, budget)
        sql = self._resolve_sql(generated, request.tools)
        if sql is None:
            return self._no_sql(generated, whitelist, budget, work_process)

        state = CorrectionState.DRAFT
        first_error: DatabaseExecutionError | None = None
        needs_join = bool(request.cross_table and request.cross_table.needs_join)
        candidates = request.cross_table.candidate_tables if request.cross_table else []

        while True:
            if state == CorrectionState.DRAFT:
                verdict = validate_sql(sql)
                if not verdict.valid:
                    category = CorrectionCategory.STATEMENT
                    if not budget.can_regenerate(category):
                        raise SQLRejectedError(verdict.error or "SQL 未通过安全检查", sql=sql)
                    work_process.add(f"SQL 未通过安全检查，正在重新生成：{verdict.error}")
                    prompt = self.composer.statement_rejected_prompt(sql, verdict.error or "", whitelist)
                    generated, sql = await self._regenerate(
                        request, conversation, generated, prompt, budget, category
                    )
                    if sql is None:
                        raise SQLRejectedError(verdict.error or "SQL 未通过安全检查", sql=generated.sql)
                    continue

                if reads_metadata(sql) and not request.policy.is_admin:
                    # catalogs are never executed for restricted roles; the
                    # filtered whitelist already is the schema they may see
                    work_process.add("查询的是数据库结构信息，正在根据可用字段重新查询实际数据")
                    return await self._second_query(
                        request, conversation, generated, sql, whitelist,
                        request.schema_tables, budget, work_process,
                    )

                expanded = expand_select_star(sql, whitelist)
                if expanded != sql:
                    work_process.add("已将 SELECT * 展开为白名单中的具体字段")
                    sql = expanded

                if self.join_regeneration_enabled:
                    assessment = assess_join_requirement(sql, needs_join, candidates)
                    category = CorrectionCategory.JOIN
                    if assessment.should_regenerate and budget.can_regenerate(category):
                        work_process.add("检测到查询需要关联多个表，正在使用 JOIN 重新生成 SQL")
                        prompt = self.composer.join_regeneration_prompt(
                            sql, assessment, request.cross_table, request.schema_tables, whitelist
                        )
                        previous = (generated, sql)
                        generated, sql = await self._regenerate(
                            request, conversation, generated, prompt, budget, category
                        )
                        if sql is None:
                            generated, sql = previous
                        continue
                    if assessment.should_regenerate:
                        logger.info(f"JOIN check still failing ({assessment.reason}); executing anyway")

                schema_result = validate_schema(sql, request.schema_tables)
                category = CorrectionCategory.SCHEMA_MISMATCH
                if not schema_result.valid and budget.can_regenerate(category):
                    names = "、".join(schema_result.invalid_names())
                    work_process.add(f"SQL 引用了不存在的表或字段（{names}），正在重新生成")
                    prompt = self.composer.schema_mismatch_prompt(sql, schema_result, whitelist)
                    generated, sql = await self._regenerate(
                        request, conversation, generated, prompt, budget, category
                    )
                    if sql is None:
                        return self._no_sql(generated, whitelist, budget, work_process)
                    continue
                if not schema_result.valid:
                    logger.info("Schema mismatch persists after regeneration; letting the database decide")

                state = CorrectionState.VALIDATED

            elif state == CorrectionState.VALIDATED:
                state = CorrectionState.EXECUTING

            elif state == CorrectionState.EXECUTING:
                work_process.add("正在执行 SQL 查询")
                try:
                    execution = await self.gateway.run(
                        request.connector, sql, request.policy, request.user, request.schema_tables
                    )
                except DatabaseExecutionError as e:
                    original = first_error or e
                    identifier = extract_unknown_identifier(e.message)
                    category = CorrectionCategory.EXECUTION_ERROR
                    if first_error is None and identifier and budget.can_regenerate(category):
                        first_error = e
                        work_process.add(f"数据库报告字段或表 “{identifier}” 不存在，正在重新生成 SQL")
                        prompt = self.composer.execution_retry_prompt(
                            sql, e.message, identifier, whitelist
                        )
                        generated, new_sql = await self._regenerate(
                            request, conversation, generated, prompt, budget, category
                        )
                        if new_sql is not None:
                            sql = new_sql
                            state = CorrectionState.DRAFT
                            continue
                    work_process.add(f"查询执行失败：{original.message}")
                    raise DatabaseExecutionError(
                        with_whitelist_guidance(original.message, whitelist),
                        sql=sql,
                        context={"driver_message": original.message},
                    ) from e

                if is_schema_metadata_result(execution.result.columns):
                    work_process.add("查询返回的是数据库结构信息，正在根据结构重新查询实际数据")
                    result = execution.result
                    tables = filter_schema(
                        normalize_schema_rows(result.columns, result.rows), request.policy
                    )
                    try:
                        derived = build_field_whitelist(result.columns, result.rows, tables, sql)
                    except WhitelistEmptyError as e:
                        raise SchemaOnlyResultUnrecoverable(NO_MATCHING_TABLE_MESSAGE, sql=sql) from e
                    return await self._second_query(
                        request, conversation, generated, sql,
                        filter_whitelist(derived, request.policy),
                        tables or request.schema_tables, budget, work_process,
                    )

                work_process.add(f"查询成功，返回 {execution.result.row_count} 行数据")
                return CorrectionOutcome(
                    state=CorrectionState.SUCCEEDED,
                    generated=generated,
                    sql=sql,
                    execution=execution,
                    whitelist=whitelist,
                    round_trips=budget.round_trips,
                    corrections=list(budget.used),
                )

    async def _second_query(
        self,
        request: CorrectionRequest,
        conversation: list[dict[str, str]],
        generated: GeneratedQuery,
        sql: str,
        derived: FieldWhitelist,
        tables: list[Table],
        budget: _Budget,
        work_process: WorkProcess,
    ) -> CorrectionOutcome:
        """Re-prompt for business data; metadata rows are never handed back."""
        category = CorrectionCategory.SCHEMA_ONLY
        if derived.is_empty or not budget.can_regenerate(category):
            raise SchemaOnlyResultUnrecoverable(NO_MATCHING_TABLE_MESSAGE, sql=sql)

        prompt = self.composer.second_query_prompt(sql, request.question, derived)
        generated, second_sql = await self._regenerate(
            request, conversation, generated, prompt, budget, category, whitelist=derived
        )
        if second_sql is None:
            raise SchemaOnlyResultUnrecoverable(NO_MATCHING_TABLE_MESSAGE, sql=sql)

        verdict = validate_sql(second_sql, block_metadata_queries=True)
        if not verdict.valid:
            logger.info(f"Second query rejected: {verdict.error}")
            raise SchemaOnlyResultUnrecoverable(NO_MATCHING_TABLE_MESSAGE, sql=second_sql)
        second_sql = expand_select_star(second_sql, derived)

        try:
            execution = await self.gateway.run(
                request.connector, second_sql, request.policy, request.user, tables
            )
        except DatabaseExecutionError as e:
            logger.info(f"Second query failed: {e.message}")
            raise SchemaOnlyResultUnrecoverable(NO_MATCHING_TABLE_MESSAGE, sql=second_sql) from e
        if is_schema_metadata_result(execution.result.columns):
            raise SchemaOnlyResultUnrecoverable(NO_MATCHING_TABLE_MESSAGE, sql=second_sql)

        work_process.add(f"二次查询成功，返回 {execution.result.row_count} 行数据")
        return CorrectionOutcome(
            state=CorrectionState.SUCCEEDED,
            generated=generated,
            sql=second_sql,
            execution=execution,
            whitelist=derived,
            round_trips=budget.round_trips,
            corrections=list(budget.used),
            second_query=True,
        )

    async def _generate(
        self,
        request: CorrectionRequest,
        conversation: list[dict[str, str]],
        prompt: str,
        budget: _Budget,
        whitelist: FieldWhitelist | None = None,
    ) -> GeneratedQuery:
        """``whitelist`` overrides the request whitelist for execution-plan recovery."""
        output = await self.generator(
            AgentInput(
                query=prompt,
                context={
                    "system_prompt": request.system_prompt,
                    "history": list(conversation),
                    "whitelist": whitelist if whitelist is not None else request.whitelist,
                },
            )
        )
        budget.round_trips += 1
        generated: GeneratedQuery = output.data["generated"]
        conversation.append({"role": "user", "content": prompt})
        if generated.raw.strip():
            conversation.append({"role": "assistant", "content": generated.raw})
        return generated

    async def _regenerate(
        self,
        request: CorrectionRequest,
        conversation: list[dict[str, str]],
        previous: GeneratedQuery,
        prompt: str,
        budget: _Budget,
        category: CorrectionCategory,
        whitelist: FieldWhitelist | None = None,
    ) -> tuple[GeneratedQuery, str | None]:
        budget.used.append(category)
        logger.info(
            f"Regenerating SQL ({category.value})",
            extra={"round_trips": budget.round_trips, "category": category.value},
        )
        generated = await self._generate(request, conversation, prompt, budget, whitelist)
        return generated, self._resolve_sql(generated, request.tools)

    def _resolve_sql(self, generated: GeneratedQuery, tools: list[PreconfiguredQuery]) -> str | None:
        if generated.sql:
            return generated.sql
        if generated.tool_call:
            name = str(generated.tool_call.get("name") or "").strip()
            for tool in tools:
                if tool.name == name:
                    logger.info(f"Model selected pre-configured query {name}")
                    return tool.sql
            logger.warning(f"Model selected unknown pre-configured query {name!r}")
        return None

    def _no_sql(
        self,
        generated: GeneratedQuery,
        whitelist: FieldWhitelist,
        budget: _Budget,
        work_process: WorkProcess,
    ) -> CorrectionOutcome:
        work_process.add("当前可用字段无法回答该问题，未执行查询")
        explanation = no_column_explanation(generated.explanation, whitelist)
        return CorrectionOutcome(
            state=CorrectionState.NO_SQL,
            generated=generated.model_copy(update={"explanation": explanation, "sql": None}),
            whitelist=whitelist,
            round_trips=budget.round_trips,
            corrections=list(budget.used),
        )
