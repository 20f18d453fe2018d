"""
ChatBI Pipeline Orchestrator

Runs one chat request end to end:

    IntentClassifier -> SchemaIntrospector -> FieldWhitelistBuilder
    -> AccessPolicyFilter -> PromptComposer -> SelfCorrectionLoop
    (generation, validation, ExecutionGateway) -> ResultPostProcessor

Non-query messages never touch the target database. Persistence and audit
writes are best-effort: failures are logged and never change the response.
Fatal errors are audit-logged, persisted on the assistant message and then
re-raised for the API layer to render.
"""

import logging
import time
from typing import Any, Literal

from pydantic import BaseModel, Field

from chatbi.agents.commands import parse_command
from chatbi.agents.executor import ExecutionGateway
from chatbi.agents.generator import SQLGenerationAgent
from chatbi.agents.intent import DisplayFormat, Intent, classify, detect_display_format, query_shape
from chatbi.agents.join_checker import detect_cross_table_need
from chatbi.audit.store import AuditEvent, AuditStatus
from chatbi.config import get_settings
from chatbi.connectors.base import ConnectorError
from chatbi.llm.base import BaseLLMProvider
from chatbi.llm.models import LLMMessage, LLMRequest
from chatbi.models.agent import AgentError, WhitelistEmptyError
from chatbi.models.chat import (
    ChatMessage,
    ChatMessageMetadata,
    TabularResult,
    UserContext,
    WorkProcess,
)
from chatbi.models.database import DatabaseConnection
from chatbi.models.schema import Table
from chatbi.pipeline.correction import (
    CorrectionOutcome,
    CorrectionRequest,
    CorrectionState,
    SelfCorrectionLoop,
)
from chatbi.postprocess.analysis import (
    AttributionAnalysis,
    AttributionAnalyzer,
    ReportGenerator,
    run_augmentations,
)
from chatbi.postprocess.enrichment import IdEnricher
from chatbi.postprocess.translation import ColumnTranslator
from chatbi.postprocess.visualization import suggest_visualization
from chatbi.prompts.composer import PreconfiguredQuery, PromptComposer, PromptContext
from chatbi.schema.introspector import SchemaIntrospector
from chatbi.schema.whitelist import build_field_whitelist
from chatbi.security.policy import (
    AccessDeniedError,
    AccessPolicyFilter,
    SQLPermissionError,
    filter_schema,
    filter_whitelist,
)
from chatbi.security.sensitive import PASSWORD_QUERY_REJECTION, detect_password_query_intent

logger = logging.getLogger(__name__)

MAX_HISTORY_MESSAGES = 10

FALLBACK_CONVERSATION_REPLY = (
    "您好！我是数据分析助手，可以帮您用自然语言查询数据库。"
    "试试直接提问，例如“统计上个月每天的订单数量”，或输入“你能做什么”查看可用功能。"
)

INTERRUPTED_MESSAGE = "请求未完成，已保存处理进度"

NO_ACCESSIBLE_FIELDS_MESSAGE = "根据您的数据权限，没有可查询的表或字段，请联系管理员分配数据权限"

PipelineStatus = Literal["success", "no_sql", "conversation", "feature_list", "rejected"]


class ChatTurn(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str = ""


class PipelineRequest(BaseModel):
    """One inbound chat request, after identity has been resolved."""

    messages: list[ChatTurn] = Field(..., min_length=1)
    connection_id: str
    session_id: str | None = None
    agent_id: str | None = None
    user: UserContext
    database_schema: list[Table] | None = Field(
        None, description="Client-supplied schema, used when nothing is cached"
    )

    @property
    def question(self) -> str:
        for turn in reversed(self.messages):
            if turn.role == "user":
                return turn.content.strip()
        return ""

    def history(self) -> list[dict[str, str]]:
        """Prior turns, without the current question."""
        turns = list(self.messages)
        for index in range(len(turns) - 1, -1, -1):
            if turns[index].role == "user":
                turns = turns[:index]
                break
        history = [
            {"role": t.role, "content": t.content}
            for t in turns
            if t.role in ("user", "assistant") and t.content.strip()
        ]
        return history[-MAX_HISTORY_MESSAGES:]


class PipelineResult(BaseModel):
    """What the API layer turns into a chat response."""

    status: PipelineStatus
    intent: Intent
    message: str
    sql: str | None = None
    query_result: TabularResult | None = None
    work_process: list[str] = Field(default_factory=list)
    session_id: str | None = None
    attribution_analysis: AttributionAnalysis | None = None
    ai_report: str | None = None
    display_format: DisplayFormat | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChatPipeline:
    """
    Orchestrates the natural-language-to-SQL chat flow.

    Usage:
        pipeline = ChatPipeline(registry, llm_provider, permission_store=store)
        result = await pipeline.run(request)
    """

    def __init__(
        self,
        registry: Any,
        llm_provider: BaseLLMProvider,
        permission_store: Any = None,
        conversation_store: Any = None,
        audit_store: Any = None,
        translation_provider: BaseLLMProvider | None = None,
        analysis_provider: BaseLLMProvider | None = None,
        composer: PromptComposer | None = None,
        introspector: SchemaIntrospector | None = None,
    ):
        """
        Args:
            registry: ConnectionRegistry resolving connection ids
            llm_provider: Provider for SQL generation and conversation
            permission_store: Source of role data permissions
            conversation_store: Optional session/message persistence
            audit_store: Optional audit log
            translation_provider: Provider for column labels (defaults to llm_provider)
            analysis_provider: Provider for attribution and reports (defaults to llm_provider)
        """
        self.config = get_settings()
        pipeline_settings = self.config.pipeline

        self.registry = registry
        self.llm = llm_provider
        self.conversation_store = conversation_store
        self.audit_store = audit_store
        self.composer = composer or PromptComposer()
        self.introspector = introspector or SchemaIntrospector()
        self.policy_filter = AccessPolicyFilter(
            permission_store=permission_store, admin_role=self.config.security.admin_role
        )
        self.gateway = ExecutionGateway(
            max_rows=self.config.database.max_rows,
            timeout_seconds=self.config.database.query_timeout,
            masking_salt=self.config.security.masking_salt.get_secret_value(),
        )
        self.correction = SelfCorrectionLoop(
            generator=SQLGenerationAgent(
                llm_provider, history_token_budget=pipeline_settings.history_token_budget
            ),
            composer=self.composer,
            gateway=self.gateway,
            max_round_trips=pipeline_settings.max_model_round_trips,
            join_regeneration_enabled=pipeline_settings.join_regeneration_enabled,
        )
        self.enricher = (
            IdEnricher(self.gateway, max_ids=pipeline_settings.batch_lookup_max_ids)
            if pipeline_settings.id_enrichment_enabled
            else None
        )
        translation_llm = translation_provider or llm_provider
        self.translator = (
            ColumnTranslator(
                llm_provider=translation_llm if pipeline_settings.llm_column_translation else None,
                composer=self.composer,
                sample_rows=pipeline_settings.sample_rows_for_translation,
            )
            if pipeline_settings.column_translation_enabled
            else None
        )
        analysis_llm = analysis_provider or llm_provider
        self.analyzer = (
            AttributionAnalyzer(analysis_llm, self.composer)
            if pipeline_settings.attribution_enabled
            else None
        )
        self.reporter = (
            ReportGenerator(analysis_llm, self.composer) if pipeline_settings.report_enabled else None
        )
        logger.info("ChatPipeline initialized")

    async def run(self, request: PipelineRequest) -> PipelineResult:
        """
        Run one chat request.

        Raises:
            KeyError: Unknown connection
            AgentError: Fatal pipeline error (already audit-logged); the
                work process and session id are in ``error.context``
            ConnectorError: Target database unreachable
        """
        work_process = WorkProcess()
        parsed = parse_command(request.question)
        question = parsed.question or request.question
        intent = classify(question)
        display_format: DisplayFormat | None = parsed.command or detect_display_format(question)
        logger.info(
            f"Chat request classified as {intent}",
            extra={"user_id": request.user.user_id, "display_format": display_format},
        )

        session_id = await self._ensure_session(request, question)
        await self._persist(session_id, ChatMessage(role="user", content=request.question))

        if detect_password_query_intent(question):
            work_process.add("检测到密码等敏感信息查询，已拒绝")
            await self._audit(
                request,
                session_id,
                question,
                None,
                "blocked",
                time.perf_counter(),
                error="password_query_rejected",
            )
            return await self._finish(
                session_id,
                PipelineResult(
                    status="rejected",
                    intent=intent,
                    message=PASSWORD_QUERY_REJECTION,
                    work_process=work_process.steps,
                    session_id=session_id,
                ),
            )

        if intent == "non_query":
            work_process.add("识别为普通对话，无需查询数据库")
            reply = await self._converse(request, question)
            return await self._finish(
                session_id,
                PipelineResult(
                    status="conversation",
                    intent=intent,
                    message=reply,
                    work_process=work_process.steps,
                    session_id=session_id,
                ),
            )

        connection = await self.registry.get_connection(request.connection_id)

        if intent == "feature_list":
            work_process.add("识别为功能咨询，整理可查询的数据表")
            tables = await self._visible_tables(request, connection)
            return await self._finish(
                session_id,
                PipelineResult(
                    status="feature_list",
                    intent=intent,
                    message=self.composer.feature_list(tables),
                    work_process=work_process.steps,
                    session_id=session_id,
                ),
            )

        started = time.perf_counter()
        try:
            result, outcome = await self._run_query(
                request,
                connection,
                question,
                display_format,
                parsed.chart_type,
                work_process,
                session_id,
            )
        except (AgentError, ConnectorError) as e:
            sql = getattr(e, "sql", None) or (
                e.context.get("sql") if isinstance(e, AgentError) else None
            )
            status: AuditStatus = (
                "blocked" if isinstance(e, (SQLPermissionError, AccessDeniedError)) else "failed"
            )
            message = e.message if isinstance(e, AgentError) else str(e)
            await self._audit(
                request, session_id, question, sql, status, started, error=message
            )
            await self._persist(
                session_id,
                ChatMessage(
                    role="assistant",
                    content=message,
                    metadata=ChatMessageMetadata(
                        sql=sql, work_process=work_process.steps, error=message
                    ),
                ),
            )
            if isinstance(e, AgentError):
                e.context.update({"work_process": work_process.steps, "session_id": session_id})
            raise
        except BaseException:
            # cancelled by the request timeout or failed unexpectedly
            work_process.add("请求已中断")
            await self._persist(
                session_id,
                ChatMessage(
                    role="assistant",
                    content=INTERRUPTED_MESSAGE,
                    metadata=ChatMessageMetadata(
                        work_process=work_process.steps, error="interrupted"
                    ),
                ),
            )
            raise

        result.session_id = session_id
        await self._audit(
            request,
            session_id,
            question,
            result.sql,
            "success",
            started,
            row_count=result.query_result.row_count if result.query_result else None,
            details={
                "round_trips": outcome.round_trips,
                "corrections": [c.value for c in outcome.corrections],
                "status": result.status,
            },
        )
        return await self._finish(session_id, result)

    async def _run_query(
        self,
        request: PipelineRequest,
        connection: DatabaseConnection,
        question: str,
        display_format: DisplayFormat | None,
        chart_type: str | None,
        work_process: WorkProcess,
        session_id: str | None = None,
    ) -> tuple[PipelineResult, CorrectionOutcome]:
        policy = await self.policy_filter.compile(
            request.user, str(connection.connection_id), connection.organization_id
        )
        if policy.is_admin:
            work_process.add("管理员账户，不应用数据权限过滤")
        else:
            work_process.add(f"已加载数据权限，可访问 {len(policy.allowed_tables)} 个表")

        connector = self.registry.connector_for(connection)
        await connector.connect()
        try:
            cached = connection.schema_metadata or list(request.database_schema or [])
            introspection = await self.introspector.introspect(
                connector, connection.schema_query, cached_schema=cached, work_process=work_process
            )
            if introspection.source == "query" and introspection.tables:
                await self._cache_schema(connection, introspection.tables)

            whitelist = build_field_whitelist(
                introspection.columns, introspection.rows, introspection.tables, introspection.sql
            )
            schema_tables = filter_schema(introspection.tables, policy)
            whitelist = filter_whitelist(whitelist, policy)
            if schema_tables:
                whitelist = whitelist.restrict_to(schema_tables)
            if whitelist.is_empty:
                work_process.add("数据权限过滤后没有可查询的字段")
                raise WhitelistEmptyError(NO_ACCESSIBLE_FIELDS_MESSAGE)
            work_process.add(f"字段白名单包含 {len(whitelist.tables)} 个表")

            cross_table = detect_cross_table_need(question, whitelist.table_names())
            if cross_table.needs_join:
                work_process.add(
                    f"问题涉及多个表：{'、'.join(cross_table.candidate_tables) or '多表关联'}"
                )
            tools = [
                PreconfiguredQuery(name=q.name, description=q.description, sql=q.sql)
                for q in connection.preconfigured_queries
            ]
            system_prompt = self.composer.compose(
                PromptContext(
                    dialect=connection.database_type,
                    database_name=connection.name,
                    schema_tables=schema_tables,
                    whitelist=whitelist,
                    tools=tools,
                    display_format=display_format,
                    chart_type=chart_type,
                    cross_table=cross_table,
                    query_shape=query_shape(question),
                )
            )

            await self._checkpoint(session_id, work_process)
            outcome = await self.correction.run(
                CorrectionRequest(
                    question=question,
                    system_prompt=system_prompt,
                    history=request.history(),
                    whitelist=whitelist,
                    schema_tables=schema_tables,
                    cross_table=cross_table,
                    tools=tools,
                    policy=policy,
                    user=request.user,
                    connector=connector,
                ),
                work_process,
            )

            if outcome.state == CorrectionState.NO_SQL:
                return PipelineResult(
                    status="no_sql",
                    intent="query",
                    message=outcome.generated.explanation,
                    work_process=work_process.steps,
                    display_format=display_format,
                ), outcome

            execution = outcome.execution
            query_result = execution.result
            if self.enricher is not None:
                query_result = await self._enrich(
                    outcome.sql, query_result, schema_tables, connector, policy, request.user, work_process
                )
        finally:
            await connector.close()

        raw_result = query_result
        if self.translator is not None:
            query_result = await self.translator.translate(query_result, question)

        visualization = suggest_visualization(
            query_result,
            display_format,
            chart_type=chart_type,
            model_hint=outcome.generated.visualization,
            title=question,
        )
        if visualization is not None:
            query_result = query_result.model_copy(update={"visualization": visualization})
            work_process.add(f"已生成图表配置（{visualization['type']}）")

        attribution, report = await run_augmentations(
            raw_result,
            question,
            outcome.sql or "",
            analyzer=self.analyzer,
            reporter=self.reporter if display_format == "report" else None,
        )
        if attribution is not None:
            work_process.add("已完成归因分析")
        if report is not None:
            work_process.add("已生成分析报告")

        return PipelineResult(
            status="success",
            intent="query",
            message=outcome.generated.explanation or f"查询完成，共返回 {query_result.row_count} 行数据",
            sql=outcome.sql,
            query_result=query_result,
            work_process=work_process.steps,
            attribution_analysis=attribution,
            ai_report=report,
            display_format=display_format,
            metadata={
                "applied_filters": execution.applied_filters,
                "was_truncated": execution.was_truncated,
                "execution_time_ms": execution.execution_time_ms,
                "second_query": outcome.second_query,
            },
        ), outcome

    async def _enrich(self, sql, result, schema_tables, connector, policy, user, work_process):
        try:
            enriched = await self.enricher.enrich(sql, result, schema_tables, connector, policy, user)
        except AgentError as e:
            logger.warning(f"ID enrichment skipped: {e.message}")
            return result
        if enriched.added_columns:
            work_process.add(f"已补充名称字段：{'、'.join(enriched.added_columns)}")
        return enriched.result

    async def _visible_tables(
        self, request: PipelineRequest, connection: DatabaseConnection
    ) -> list[Table]:
        tables = connection.schema_metadata or list(request.database_schema or [])
        try:
            policy = await self.policy_filter.compile(
                request.user, str(connection.connection_id), connection.organization_id
            )
        except AccessDeniedError:
            return []
        return filter_schema(tables, policy)

    async def _converse(self, request: PipelineRequest, question: str) -> str:
        system_prompt = self.composer.conversation_prompt()
        messages = [LLMMessage(role="system", content=system_prompt)]
        messages.extend(LLMMessage(**turn) for turn in request.history())
        messages.append(LLMMessage(role="user", content=question or request.question or "你好"))
        try:
            response = await self.llm.complete(LLMRequest(messages=messages, temperature=0.7))
        except AgentError as e:
            logger.warning(f"Conversational reply failed, using canned reply: {e.message}")
            return FALLBACK_CONVERSATION_REPLY
        return response.content.strip() or FALLBACK_CONVERSATION_REPLY

    async def _cache_schema(self, connection: DatabaseConnection, tables: list[Table]) -> None:
        try:
            await self.registry.update_schema_cache(connection.connection_id, tables)
        except Exception as e:
            logger.warning(f"Failed to cache schema metadata: {e}")

    async def _ensure_session(self, request: PipelineRequest, question: str) -> str | None:
        """Provisional session row, written before any model call."""
        if self.conversation_store is None:
            return request.session_id
        try:
            return await self.conversation_store.ensure_session(
                session_id=request.session_id,
                user_id=request.user.user_id,
                title=question,
                organization_id=request.user.organization_id,
                database_connection_id=request.connection_id,
                agent_id=request.agent_id,
            )
        except Exception as e:
            logger.warning(f"Failed to create chat session: {e}")
            return request.session_id

    async def _persist(self, session_id: str | None, message: ChatMessage) -> None:
        if self.conversation_store is None or session_id is None:
            return
        try:
            await self.conversation_store.append_message(session_id, message)
        except Exception as e:
            logger.warning(f"Failed to persist {message.role} message: {e}")

    async def _checkpoint(self, session_id: str | None, work_process: WorkProcess) -> None:
        """Save progress so far, so an interrupted request still leaves a trail."""
        if self.conversation_store is None or session_id is None:
            return
        try:
            await self.conversation_store.save_checkpoint(session_id, work_process.steps)
        except Exception as e:
            logger.warning(f"Failed to checkpoint work process: {e}")

    async def _finish(self, session_id: str | None, result: PipelineResult) -> PipelineResult:
        await self._persist(
            session_id,
            ChatMessage(
                role="assistant",
                content=result.message,
                metadata=ChatMessageMetadata(
                    sql=result.sql,
                    query_result=result.query_result,
                    work_process=result.work_process,
                    extra={
                        "status": result.status,
                        "display_format": result.display_format,
                        "ai_report": result.ai_report,
                    },
                ),
            ),
        )
        return result

    async def _audit(
        self,
        request: PipelineRequest,
        session_id: str | None,
        question: str,
        sql: str | None,
        status: AuditStatus,
        started: float,
        error: str | None = None,
        row_count: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if self.audit_store is None:
            return
        event = AuditEvent(
            user_id=request.user.user_id,
            organization_id=request.user.organization_id,
            session_id=session_id,
            database_connection_id=request.connection_id,
            question=question,
            sql=sql,
            status=status,
            error=error,
            row_count=row_count,
            duration_ms=(time.perf_counter() - started) * 1000,
            details=details or {},
        )
        try:
            await self.audit_store.record(event)
        except Exception as e:
            logger.warning(f"Failed to write audit log: {e}")
