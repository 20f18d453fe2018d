"""
Field whitelist construction.

The whitelist is the per-request allow-list of ``table -> columns`` that
bounds every generation prompt. Sources, in priority order:

    1. rows actually returned by the introspection query
    2. the fallback schema (cached metadata / filtered schema)

If the introspection query returned business data instead of metadata, its
own column names become the whitelist of the table named in its FROM clause.
"""

import logging
from typing import Any

from chatbi.models.agent import WhitelistEmptyError
from chatbi.models.schema import FieldWhitelist, Table
from chatbi.schema.introspector import normalize_schema_rows
from chatbi.utils.sql_inspect import extract_table_names

logger = logging.getLogger(__name__)

PLACEHOLDER_TABLE = "query_result"


def _from_tables(tables: list[Table]) -> dict[str, tuple[str, ...]]:
    mapping: dict[str, tuple[str, ...]] = {}
    for table in tables:
        columns = tuple(dict.fromkeys(table.column_names()))
        if columns:
            mapping[table.name] = columns
    return mapping


def build_field_whitelist(
    columns: list[str] | None,
    rows: list[dict[str, Any]] | None,
    fallback_schema: list[Table] | None,
    sql: str | None = None,
) -> FieldWhitelist:
    """
    Build the whitelist from an introspection result and a fallback schema.

    Raises:
        WhitelistEmptyError: Neither source yields a single column
    """
    columns = list(columns or [])
    rows = list(rows or [])

    if rows:
        tables = normalize_schema_rows(columns, rows)
        if tables:
            whitelist = FieldWhitelist(tables=_from_tables(tables), source="query_result")
            if not whitelist.is_empty:
                logger.debug(
                    f"Whitelist built from introspection rows: {len(whitelist.tables)} tables"
                )
                return whitelist
        elif columns:
            table_names = extract_table_names(sql) if sql else []
            table = table_names[0] if table_names else PLACEHOLDER_TABLE
            logger.info(
                f"Introspection returned data rows; whitelisting result columns under {table}"
            )
            return FieldWhitelist(
                tables={table: tuple(dict.fromkeys(columns))}, source="result_columns"
            )

    whitelist = FieldWhitelist(tables=_from_tables(fallback_schema or []), source="schema")
    if whitelist.is_empty:
        raise WhitelistEmptyError(
            "无法构建字段白名单：数据库结构查询未返回任何字段，请检查“获取数据库结构”查询配置"
        )
    return whitelist
