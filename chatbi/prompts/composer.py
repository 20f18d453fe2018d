"""
PromptComposer

Builds the system prompt for one generation attempt and the follow-up
correction prompts used by the self-correction loop. All text lives in the
Jinja2 templates under ``chatbi/prompts/templates``; this module only
gathers the variables.
"""

import json
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from chatbi.agents.intent import DisplayFormat
from chatbi.agents.join_checker import CrossTableNeed, JoinAssessment
from chatbi.agents.validator import SchemaValidationResult
from chatbi.models.schema import FieldWhitelist, Table
from chatbi.prompts.loader import PromptLoader
from chatbi.schema.relationships import Relationship, infer_relationships

logger = logging.getLogger(__name__)

SYSTEM_TEMPLATE = "system/sql_generation.md"


class PreconfiguredQuery(BaseModel):
    """An administrator-defined query the model may pick via ``toolCall``."""

    name: str
    description: str | None = None
    sql: str


class PromptContext(BaseModel):
    """Everything one system prompt is built from."""

    dialect: str = "mysql"
    database_name: str | None = None
    schema_tables: list[Table] = Field(default_factory=list)
    whitelist: FieldWhitelist
    relationships: list[Relationship] | None = None
    tools: list[PreconfiguredQuery] = Field(default_factory=list)
    display_format: DisplayFormat | None = None
    chart_type: str | None = None
    cross_table: CrossTableNeed | None = None
    query_shape: str | None = None

    model_config = ConfigDict(arbitrary_types_allowed=True)


def format_schema_text(tables: list[Table]) -> str:
    """Human-readable schema block, one table per paragraph."""
    if not tables:
        return "（数据库结构为空，只能使用字段白名单中列出的字段）"
    blocks = []
    for table in tables:
        header = f"表 {table.name}"
        if table.description:
            header += f"（{table.description}）"
        lines = [f"{header}："]
        for column in table.columns:
            details = [column.type] if column.type else []
            if column.is_primary_key:
                details.append("主键")
            elif column.is_foreign_key:
                details.append("外键")
            if not column.nullable:
                details.append("非空")
            line = f"  - {column.name}"
            if details:
                line += f" ({', '.join(details)})"
            if column.description:
                line += f"：{column.description}"
            lines.append(line)
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def _sample_text(rows: list[dict[str, Any]], limit: int) -> str:
    if not rows or limit <= 0:
        return "（无）"
    return "\n".join(json.dumps(row, ensure_ascii=False, default=str) for row in rows[:limit])


class PromptComposer:
    """
    Renders generation and correction prompts.

    The whitelist block is the highest-priority section of every prompt and
    is repeated at the start and end of the system prompt.
    """

    def __init__(self, loader: PromptLoader | None = None):
        self.loader = loader or PromptLoader()

    def compose(self, context: PromptContext) -> str:
        relationships = context.relationships
        if relationships is None:
            relationships = infer_relationships(context.schema_tables)
        cross_table = context.cross_table
        prompt = self.loader.render(
            SYSTEM_TEMPLATE,
            database_name=context.database_name,
            dialect=context.dialect,
            schema_text=format_schema_text(context.schema_tables),
            relationships=[r.sentence() for r in relationships],
            whitelist_text=context.whitelist.render_text(),
            tools=[tool.model_dump() for tool in context.tools],
            display_format=context.display_format,
            chart_type=context.chart_type,
            join_required=bool(cross_table and cross_table.needs_join),
            candidate_tables=cross_table.candidate_tables if cross_table else [],
            query_shape=context.query_shape,
        )
        logger.debug(
            f"Composed system prompt ({len(prompt)} chars)",
            extra={
                "tables": len(context.schema_tables),
                "join_required": bool(cross_table and cross_table.needs_join),
                "display_format": context.display_format,
            },
        )
        return prompt

    def schema_mismatch_prompt(
        self, sql: str, validation: SchemaValidationResult, whitelist: FieldWhitelist
    ) -> str:
        return self.loader.render(
            "agents/schema_mismatch.md",
            sql=sql,
            invalid_names=validation.invalid_names(),
            errors=validation.errors,
            whitelist_text=whitelist.render_text(),
        )

    def execution_retry_prompt(
        self, sql: str, error_message: str, identifier: str, whitelist: FieldWhitelist
    ) -> str:
        return self.loader.render(
            "agents/execution_retry.md",
            sql=sql,
            error_message=error_message,
            identifier=identifier,
            whitelist_text=whitelist.render_text(),
        )

    def join_regeneration_prompt(
        self,
        sql: str,
        assessment: JoinAssessment,
        cross_table: CrossTableNeed | None,
        schema_tables: list[Table],
        whitelist: FieldWhitelist,
    ) -> str:
        return self.loader.render(
            "agents/join_regeneration.md",
            sql=sql,
            reason=assessment.reason,
            candidate_tables=cross_table.candidate_tables if cross_table else [],
            relationships=[r.sentence() for r in infer_relationships(schema_tables)],
            whitelist_text=whitelist.render_text(),
        )

    def statement_rejected_prompt(self, sql: str, error: str, whitelist: FieldWhitelist) -> str:
        return self.loader.render(
            "agents/statement_rejected.md",
            sql=sql,
            error=error,
            whitelist_text=whitelist.render_text(),
        )

    def second_query_prompt(self, sql: str, question: str, whitelist: FieldWhitelist) -> str:
        return self.loader.render(
            "agents/second_query.md",
            sql=sql,
            question=question,
            whitelist_text=whitelist.render_text(),
        )

    def conversation_prompt(self, database_name: str | None = None) -> str:
        return self.loader.render("system/conversation.md", database_name=database_name)

    def feature_list(self, tables: list[Table]) -> str:
        return self.loader.render(
            "agents/feature_list.md",
            tables=[
                {
                    "name": table.name,
                    "description": table.description,
                    "columns": table.column_names()[:8],
                }
                for table in tables
            ],
        )

    def column_translation_prompt(
        self, question: str, columns: list[str], rows: list[dict[str, Any]], sample_size: int
    ) -> str:
        return self.loader.render(
            "agents/column_translation.md",
            question=question,
            columns=columns,
            sample_rows=_sample_text(rows, sample_size),
        )

    def attribution_prompt(self, question: str, findings: list[str]) -> str:
        return self.loader.render("agents/attribution.md", question=question, findings=findings)

    def report_prompt(
        self,
        question: str,
        sql: str,
        columns: list[str],
        rows: list[dict[str, Any]],
        sample_size: int = 10,
    ) -> str:
        return self.loader.render(
            "agents/report.md",
            question=question,
            sql=sql,
            columns=columns,
            row_count=len(rows),
            sample_rows=_sample_text(rows, sample_size),
        )
