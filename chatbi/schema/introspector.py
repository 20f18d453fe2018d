"""
Schema introspection.

Runs the connection's configured schema query and normalizes whatever shape
it returns into ``Table``/``Column`` models. Result columns are recognised by
name patterns (``TABLE_NAME``, ``table_name``, ``表名`` …) rather than by
position, since every deployment writes its own schema query.
"""

import logging
import re
from typing import Any

from pydantic import BaseModel, Field

from chatbi.agents.validator import validate_sql
from chatbi.connectors.base import BaseConnector, QueryError
from chatbi.models.agent import SchemaUnavailableError
from chatbi.models.chat import WorkProcess
from chatbi.models.schema import Column, Table

logger = logging.getLogger(__name__)

_ROLE_PATTERNS: dict[str, list[str]] = {
    "table": [
        r"^table_?name$",
        r"^tbl_?name$",
        r"^table$",
        r"^relname$",
        r"^表名(称)?$",
        r"^表$",
        r"^数据表$",
    ],
    "column": [
        r"^column_?name$",
        r"^col_?name$",
        r"^column$",
        r"^field(_?name)?$",
        r"^attname$",
        r"^(字段|列)(名|名称)?$",
    ],
    "type": [r"^data_?type$", r"^column_?type$", r"^type$", r"^(数据)?类型$", r"^字段类型$"],
    "nullable": [r"^is_?nullable$", r"^nullable$", r"^null$", r"^(是否)?可(为)?空$"],
    "key": [r"^column_?key$", r"^key$", r"^is_?primary(_?key)?$", r"^primary_?key$", r"^(是否)?主键$"],
    "comment": [
        r"^column_?comment$",
        r"^comment$",
        r"^description$",
        r"^remarks?$",
        r"^(字段|列)?(注释|说明|描述|备注)$",
    ],
}


def _canonical(name: str) -> str:
    return re.sub(r"\s+", "", str(name)).lower()


def detect_column_roles(columns: list[str]) -> dict[str, str]:
    """Map role (table/column/type/nullable/key/comment) to the matching result column."""
    roles: dict[str, str] = {}
    for role, patterns in _ROLE_PATTERNS.items():
        for column in columns:
            if any(re.match(p, _canonical(column)) for p in patterns):
                roles[role] = column
                break
    return roles


def is_schema_metadata_result(columns: list[str]) -> bool:
    """
    True when a result looks like table/column metadata rather than business
    data: a table-name column alongside a column-name, type or comment column.
    """
    roles = detect_column_roles(columns)
    return "table" in roles and any(r in roles for r in ("column", "type", "comment"))


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in {"yes", "y", "true", "t", "1", "是"}


def normalize_schema_rows(columns: list[str], rows: list[dict[str, Any]]) -> list[Table]:
    """
    Group metadata rows into tables, de-duplicating columns by name.

    Returns an empty list when the result has no table-name or column-name
    column (i.e. it is not metadata).
    """
    roles = detect_column_roles(columns)
    if "table" not in roles or "column" not in roles:
        return []

    tables: dict[str, Table] = {}
    seen: dict[str, set[str]] = {}
    for row in rows:
        table_name = str(row.get(roles["table"]) or "").strip()
        column_name = str(row.get(roles["column"]) or "").strip()
        if not table_name or not column_name:
            continue
        table = tables.setdefault(table_name, Table(name=table_name))
        names = seen.setdefault(table_name, set())
        if column_name.lower() in names:
            continue
        names.add(column_name.lower())
        key_value = row.get(roles["key"]) if "key" in roles else None
        is_primary = str(key_value).upper() == "PRI" or (
            key_value is not None and str(key_value).upper() != "MUL" and _truthy(key_value)
        )
        table.columns.append(
            Column(
                name=column_name,
                type=str(row.get(roles["type"]) or "") if "type" in roles else "",
                nullable=_truthy(row.get(roles["nullable"])) if "nullable" in roles else True,
                is_primary_key=is_primary,
                is_foreign_key=str(key_value).upper() == "MUL"
                or (column_name.lower().endswith("_id") and column_name.lower() != "id"),
                description=(str(row.get(roles["comment"])) or None)
                if "comment" in roles and row.get(roles["comment"])
                else None,
            )
        )
    return list(tables.values())


class IntrospectionResult(BaseModel):
    """Raw introspection rows plus the normalized schema."""

    sql: str | None = None
    columns: list[str] = Field(default_factory=list)
    rows: list[dict[str, Any]] = Field(default_factory=list)
    tables: list[Table] = Field(default_factory=list)
    source: str = Field(default="query", description="query | cache | empty")

    @property
    def degraded(self) -> bool:
        return self.source != "query"


class SchemaIntrospector:
    """
    Executes a connection's schema query and normalizes the result.

    Degrades rather than aborting when the query returns nothing usable:
    cached connection metadata is used first, then an empty schema.
    """

    async def introspect(
        self,
        connector: BaseConnector,
        schema_query: str | None,
        cached_schema: list[Table] | None = None,
        work_process: WorkProcess | None = None,
    ) -> IntrospectionResult:
        """
        Raises:
            SchemaUnavailableError: No schema query is configured, or the
                configured query is not a read-only statement
        """
        work_process = work_process if work_process is not None else WorkProcess()
        if not schema_query or not schema_query.strip():
            raise SchemaUnavailableError(
                "未配置数据库结构查询，请在数据库连接中配置“获取数据库结构”查询后重试"
            )

        verdict = validate_sql(schema_query, allow_schema_introspection=True)
        if not verdict.valid:
            raise SchemaUnavailableError(f"数据库结构查询不合法: {verdict.error}")

        work_process.add("正在获取数据库结构")
        columns: list[str] = []
        rows: list[dict[str, Any]] = []
        try:
            result = await connector.execute(schema_query)
            columns, rows = list(result.columns), list(result.rows)
        except QueryError as e:
            logger.warning(f"Schema query failed, falling back: {e}")
            work_process.add(f"数据库结构查询失败：{e}")

        tables = normalize_schema_rows(columns, rows)
        if rows and (tables or columns):
            work_process.add(f"获取到 {len(tables) or 1} 个表的结构信息")
            return IntrospectionResult(
                sql=schema_query, columns=columns, rows=rows, tables=tables, source="query"
            )

        if cached_schema:
            logger.info("Schema query returned no rows; using cached connection metadata")
            work_process.add("⚠️ 数据库结构查询未返回数据，已降级使用缓存的数据库结构")
            return IntrospectionResult(sql=schema_query, tables=list(cached_schema), source="cache")

        logger.warning("Schema query returned no rows and no cached metadata is available")
        work_process.add("⚠️ 数据库结构查询未返回数据，且无缓存结构，以空结构继续")
        return IntrospectionResult(sql=schema_query, source="empty")
