"""
SQL validation: rule-based, no model calls.

``validate_sql`` is the statement-type gate (read-only only, one statement).
``validate_schema`` checks table/column references against the filtered
schema; it is advisory and feeds the self-correction loop. The hard security
boundary is ``chatbi.security.policy.enforce_column_access``.

All functions here are pure: the same input always yields the same verdict.
"""

import logging
import re
from collections.abc import Iterable

from pydantic import BaseModel, Field

from chatbi.models.schema import FieldWhitelist, Table, find_table
from chatbi.utils.sql_inspect import (
    block_column_refs,
    block_table_refs,
    clean_sql,
    extract_cte_names,
    iter_select_blocks,
    mask_literals,
    select_list_span,
    split_select_item,
    split_statements,
    split_top_level,
    statement_type,
    unquote_identifier,
)

logger = logging.getLogger(__name__)

FORBIDDEN_KEYWORDS = (
    "INSERT",
    "UPDATE",
    "DELETE",
    "DROP",
    "ALTER",
    "CREATE",
    "TRUNCATE",
    "REPLACE",
    "MERGE",
    "EXEC",
    "EXECUTE",
    "CALL",
    "GRANT",
    "REVOKE",
    "COMMIT",
    "ROLLBACK",
    "SAVEPOINT",
)

INTROSPECTION_KEYWORDS = ("SHOW", "DESCRIBE", "DESC", "EXPLAIN")

_METADATA_SOURCE_RE = re.compile(
    r"\b(?:information_schema|pg_catalog|mysql\s*\.|sys\s*\.)", re.IGNORECASE
)


class ValidationResult(BaseModel):
    valid: bool
    error: str | None = None


class InvalidColumn(BaseModel):
    table: str
    column: str

    def label(self) -> str:
        return f"{self.table}.{self.column}"


class SchemaValidationResult(BaseModel):
    valid: bool = True
    invalid_tables: list[str] = Field(default_factory=list)
    invalid_columns: list[InvalidColumn] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    def invalid_names(self) -> list[str]:
        """Every offending identifier, tables first."""
        return [*self.invalid_tables, *(c.label() for c in self.invalid_columns)]


def validate_sql(
    sql: str | None,
    allow_schema_introspection: bool = False,
    block_metadata_queries: bool = False,
) -> ValidationResult:
    """
    Statement-type gate.

    Args:
        sql: Candidate statement
        allow_schema_introspection: Permit SHOW/DESCRIBE/EXPLAIN and catalog
            reads; set only when fetching the schema itself
        block_metadata_queries: Also reject SELECTs over information_schema
            and similar catalogs when introspection is not allowed
    """
    if not sql or not sql.strip():
        return ValidationResult(valid=False, error="SQL 查询不能为空")

    statements = split_statements(sql)
    if len(statements) > 1:
        return ValidationResult(
            valid=False, error="不允许执行多个 SQL 语句。请一次只执行一个查询。"
        )
    if not statements:
        return ValidationResult(valid=False, error="SQL 查询不能为空")
    cleaned = statements[0]
    masked = mask_literals(cleaned)

    keyword = statement_type(cleaned)
    allowed = {"SELECT", *INTROSPECTION_KEYWORDS} if allow_schema_introspection else {"SELECT"}
    if keyword not in allowed:
        expected = "SELECT、SHOW、DESCRIBE 或 EXPLAIN" if allow_schema_introspection else "SELECT"
        return ValidationResult(
            valid=False,
            error=f"只允许执行 {expected} 查询。检测到: {cleaned[:50]}",
        )

    for forbidden in FORBIDDEN_KEYWORDS:
        if re.search(rf"\b{forbidden}\b", masked, re.IGNORECASE):
            # REPLACE() is a string function in both dialects
            if forbidden == "REPLACE" and re.search(r"\bREPLACE\s*\(", masked, re.IGNORECASE):
                continue
            return ValidationResult(
                valid=False,
                error=f"检测到禁止的操作: {forbidden}。只允许执行 SELECT 查询。",
            )

    if (
        block_metadata_queries
        and not allow_schema_introspection
        and _METADATA_SOURCE_RE.search(masked)
    ):
        return ValidationResult(
            valid=False, error="不允许查询数据库元数据（information_schema 等），请查询业务数据表"
        )

    return ValidationResult(valid=True)


def reads_metadata(sql: str | None) -> bool:
    """True when the statement reads information_schema or a system catalog."""
    if not sql:
        return False
    return bool(_METADATA_SOURCE_RE.search(mask_literals(clean_sql(sql))))


def _schema_columns(table: Table) -> set[str]:
    return {name.lower() for name in table.column_names()}


def validate_schema(sql: str, schema: list[Table]) -> SchemaValidationResult:
    """
    Check that every referenced table and column exists in ``schema``.

    CTE names, derived-table aliases and output-column aliases are honoured.
    An empty schema skips validation.
    """
    result = SchemaValidationResult()
    if not schema or statement_type(sql) != "SELECT":
        return result

    ctes = extract_cte_names(sql)
    blocks = list(iter_select_blocks(sql))

    # aliases visible anywhere, for correlated subqueries
    global_aliases: dict[str, Table | None] = {}
    for block in blocks:
        tables, _ = block_table_refs(block)
        for ref in tables:
            resolved = None if ref.name.lower() in ctes else find_table(schema, ref.name)
            global_aliases.setdefault(ref.name.lower(), resolved)
            global_aliases.setdefault(ref.name.lower().rsplit(".", 1)[-1], resolved)
            if ref.alias:
                global_aliases.setdefault(ref.alias.lower(), resolved)

    def _add_table(name: str) -> None:
        if name not in result.invalid_tables:
            result.invalid_tables.append(name)
            result.errors.append(f'表 "{name}" 不存在于数据库 schema 中')

    def _add_column(table: str, column: str, qualifier: str | None = None) -> None:
        if any(c.table == table and c.column == column for c in result.invalid_columns):
            return
        result.invalid_columns.append(InvalidColumn(table=table, column=column))
        shown = f"{qualifier}.{column}" if qualifier else column
        result.errors.append(f'字段 "{shown}" 不存在于表 "{table}" 中')

    for block in blocks:
        tables, block_derived = block_table_refs(block)
        derived = block_derived | ctes
        local: dict[str, Table | None] = {}
        real: list[Table] = []
        # unqualified columns may come from a derived table we do not model
        opaque = bool(block_derived)
        for ref in tables:
            if ref.name.lower() in ctes:
                derived.add((ref.alias or ref.name).lower())
                opaque = True
                continue
            table = find_table(schema, ref.name)
            if table is None:
                _add_table(ref.name)
            else:
                real.append(table)
            local[ref.name.lower()] = table
            local[ref.name.lower().rsplit(".", 1)[-1]] = table
            if ref.alias:
                local[ref.alias.lower()] = table

        for ref in block_column_refs(block):
            if ref.qualifier:
                qualifier = ref.qualifier.lower()
                if qualifier in derived:
                    continue
                if qualifier in local:
                    table = local[qualifier]
                elif qualifier in global_aliases:
                    table = global_aliases[qualifier]
                else:
                    _add_table(ref.qualifier)
                    continue
                if table is not None and ref.column.lower() not in _schema_columns(table):
                    _add_column(table.name, ref.column, ref.qualifier)
                continue

            if not real or opaque:
                continue
            if any(ref.column.lower() in _schema_columns(t) for t in real):
                continue
            _add_column(real[0].name, ref.column)

    result.valid = not result.errors
    if not result.valid:
        logger.info(f"Schema validation failed: {result.errors}")
    return result


def expand_select_star(sql: str, source: FieldWhitelist | Iterable[Table]) -> str:
    """
    Replace ``*`` / ``t.*`` in the top-level select list with explicit columns.

    Only single-block statements are rewritten; anything the column source
    does not know is left as-is for the validator to flag.
    """
    cleaned = clean_sql(sql)
    blocks = list(iter_select_blocks(cleaned))
    if len(blocks) != 1:
        return cleaned
    span = select_list_span(cleaned)
    if span is None:
        return cleaned
    tables, _ = block_table_refs(blocks[0])
    if not tables:
        return cleaned

    def _columns(table_name: str) -> tuple[str, ...]:
        if isinstance(source, FieldWhitelist):
            return source.columns_for(table_name)
        table = find_table(list(source), table_name)
        return tuple(table.column_names()) if table else ()

    alias_map = {}
    for ref in tables:
        alias_map[ref.name.lower()] = ref
        alias_map[ref.name.lower().rsplit(".", 1)[-1]] = ref
        if ref.alias:
            alias_map[ref.alias.lower()] = ref

    start, end = span
    items = split_top_level(cleaned[start:end])
    expanded: list[str] = []
    changed = False
    for item in items:
        stripped = item.strip()
        if stripped == "*":
            if len(tables) == 1:
                columns = _columns(tables[0].name)
                if columns:
                    expanded.extend(columns)
                    changed = True
                    continue
            else:
                pieces = []
                for ref in tables:
                    qualifier = ref.alias or ref.name
                    pieces.extend(f"{qualifier}.{c}" for c in _columns(ref.name))
                if pieces:
                    expanded.extend(pieces)
                    changed = True
                    continue
        star = re.fullmatch(r"(.+?)\s*\.\s*\*", stripped)
        if star:
            qualifier = unquote_identifier(star.group(1).split(".")[-1])
            ref = alias_map.get(qualifier.lower())
            columns = _columns(ref.name) if ref else ()
            if columns:
                expanded.extend(f"{star.group(1)}.{c}" for c in columns)
                changed = True
                continue
        expanded.append(stripped)

    if not changed:
        return cleaned
    rewritten = f"{cleaned[:start].rstrip()} {', '.join(expanded)} {cleaned[end:].lstrip()}"
    logger.debug(f"Expanded SELECT * to {len(expanded)} columns")
    return rewritten.strip()


def has_select_star(sql: str) -> bool:
    span = select_list_span(clean_sql(sql))
    if span is None:
        return False
    cleaned = clean_sql(sql)
    for item in split_top_level(cleaned[span[0] : span[1]]):
        expression, _ = split_select_item(item)
        if expression.strip() == "*" or expression.strip().endswith(".*"):
            return True
    return False
