"""
Access policy enforcement.

Three independent layers, all bypassed for the admin role only:

    1. ``filter_schema`` / ``filter_whitelist`` before prompting, so the model
       never sees disallowed tables or columns
    2. ``enforce_column_access`` on the generated SQL right before execution
    3. ``apply_masking`` (chatbi.security.masking) on the result set

``apply_to_sql`` rejects disallowed tables/operations and injects row-level
predicates for ``user_related`` tables.
"""

import logging
import re
from typing import Any

from pydantic import BaseModel, Field

from chatbi.models.agent import AgentError
from chatbi.models.chat import UserContext
from chatbi.models.policy import ColumnRule, CompiledPolicy, DataPermission, TablePermission
from chatbi.models.schema import FieldWhitelist, Table, find_table
from chatbi.security.masking import build_masked_column_map
from chatbi.utils.sql_inspect import (
    SQL_KEYWORDS,
    TableRef,
    add_where_condition,
    clean_sql,
    derived_aliases,
    extract_column_refs,
    extract_star_qualifiers,
    extract_table_refs,
    iter_select_blocks,
    statement_type,
    unparsed_relations,
)

logger = logging.getLogger(__name__)

NO_PERMISSION_MESSAGE = "未配置数据访问权限，请联系管理员为您的角色分配数据权限"


class AccessDeniedError(AgentError):
    """The statement touches tables or operations the role may not use."""

    def __init__(self, message: str, restricted_tables: list[str] | None = None):
        self.restricted_tables = restricted_tables or []
        super().__init__(
            "AccessPolicyFilter",
            message,
            recoverable=False,
            context={"restricted_tables": self.restricted_tables},
        )


class SQLPermissionError(AgentError):
    """Pre-execution column check failed. Never retried."""

    def __init__(self, message: str, reason: str, blocked_columns: list[str] | None = None):
        self.reason = reason
        self.blocked_columns = blocked_columns or []
        super().__init__(
            "AccessPolicyFilter",
            message,
            recoverable=False,
            context={"reason": reason, "blocked_columns": self.blocked_columns},
        )


class AppliedPolicy(BaseModel):
    modified_sql: str
    restricted_tables: list[str] = Field(default_factory=list)
    applied_filters: list[str] = Field(default_factory=list)


# ----------------------------------------------------------------------------
# Compilation
# ----------------------------------------------------------------------------


def compile_permission(permission: DataPermission | None, is_admin: bool = False) -> CompiledPolicy:
    """Compile a stored permission into the per-request policy."""
    if is_admin:
        return CompiledPolicy(is_admin=True)
    if permission is None:
        return CompiledPolicy()

    allowed: set[str] = set()
    table_map: dict[str, TablePermission] = {}
    column_map: dict[str, dict[str, ColumnRule]] = {}
    for table_permission in permission.table_permissions:
        key = table_permission.table_name.lower()
        table_map[key] = table_permission
        if table_permission.enabled:
            allowed.add(key)
        column_map[key] = {
            cp.column_name.lower(): ColumnRule(
                accessible=cp.accessible, masked=cp.masked, mask_type=cp.mask_type
            )
            for cp in table_permission.column_permissions
        }

    policy = CompiledPolicy(
        allowed_tables=allowed,
        table_permission_map=table_map,
        column_permission_map=column_map,
    )
    policy.masking_rules = build_masked_column_map(policy)
    return policy


class AccessPolicyFilter:
    """Compiles policies from the permission store. Nothing is cached across requests."""

    def __init__(self, permission_store: Any = None, admin_role: str = "admin") -> None:
        self.permission_store = permission_store
        self.admin_role = admin_role

    async def compile(
        self, user: UserContext, connection_id: str, organization_id: str | None = None
    ) -> CompiledPolicy:
        """
        Raises:
            AccessDeniedError: Non-admin user without a configured permission
        """
        if user.role == self.admin_role:
            return compile_permission(None, is_admin=True)

        permission = None
        if self.permission_store is not None:
            permission = await self.permission_store.get_permission(
                organization_id=organization_id or user.organization_id,
                connection_id=connection_id,
                role=user.role,
            )
        if permission is None:
            logger.warning(
                f"No data permission for role {user.role} on connection {connection_id}",
                extra={"user_id": user.user_id, "role": user.role},
            )
            raise AccessDeniedError(NO_PERMISSION_MESSAGE)
        return compile_permission(permission)


# ----------------------------------------------------------------------------
# Layer 1: schema / whitelist filtering
# ----------------------------------------------------------------------------


def filter_schema(schema: list[Table], policy: CompiledPolicy) -> list[Table]:
    """Drop disallowed tables and inaccessible columns."""
    if policy.is_admin:
        return schema
    filtered = []
    for table in schema:
        if not policy.table_allowed(table.name):
            continue
        hidden = policy.inaccessible_columns(table.name)
        filtered.append(
            table.model_copy(
                update={"columns": [c for c in table.columns if c.name.lower() not in hidden]}
            )
        )
    return filtered


def filter_whitelist(whitelist: FieldWhitelist, policy: CompiledPolicy) -> FieldWhitelist:
    if policy.is_admin:
        return whitelist
    tables: dict[str, tuple[str, ...]] = {}
    for name, columns in whitelist.tables.items():
        if not policy.table_allowed(name):
            continue
        hidden = policy.inaccessible_columns(name)
        kept = tuple(c for c in columns if c.lower() not in hidden)
        if kept:
            tables[name] = kept
    return FieldWhitelist(tables=tables, source=whitelist.source)


# ----------------------------------------------------------------------------
# Row-level rewriting
# ----------------------------------------------------------------------------


def _quote(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def build_row_filter(table_permission: TablePermission, user: UserContext, qualifier: str) -> str | None:
    """Predicate restricting a ``user_related`` table to the caller's rows."""
    if table_permission.data_scope != "user_related":
        return None

    if table_permission.row_level_filter:
        predicate = table_permission.row_level_filter
        for placeholder, value in {
            "{{user_id}}": user.user_id,
            "{{user_email}}": user.email or "",
            "{{user_name}}": user.name or "",
            "{{user_role}}": user.role,
        }.items():
            predicate = predicate.replace(placeholder, str(value).replace("'", "''"))
        return predicate

    fields = table_permission.user_relation_fields
    conditions = []
    if fields is not None:
        for column, value in (
            (fields.user_id, user.user_id),
            (fields.user_email, user.email),
            (fields.user_name, user.name),
        ):
            if column and value:
                conditions.append(f"{qualifier}.{column} = {_quote(value)}")
    if not conditions:
        # no way to relate rows to this user
        return "1 = 0"
    if len(conditions) == 1:
        return conditions[0]
    return "(" + " OR ".join(conditions) + ")"


def apply_to_sql(sql: str, policy: CompiledPolicy, user: UserContext) -> AppliedPolicy:
    """
    Raises:
        AccessDeniedError: A referenced table is not permitted, or the
            statement type is not an allowed operation for it. Also raised when
            a FROM clause holds a relation that could not be identified, or a
            row filter could not be attached to its table
    """
    if policy.is_admin:
        return AppliedPolicy(modified_sql=sql)

    sql = clean_sql(sql)
    unparsed = unparsed_relations(sql)
    if unparsed:
        logger.warning(f"Unrecognized FROM segments: {unparsed}", extra={"user_id": user.user_id})
        raise AccessDeniedError(f"无法识别查询中的表引用: {', '.join(unparsed)}")
    operation = statement_type(sql) or "SELECT"
    refs = extract_table_refs(sql)
    restricted: list[str] = []
    for ref in refs:
        table_permission = policy.table_permission(ref.name)
        if (
            not policy.table_allowed(ref.name)
            or table_permission is None
            or operation not in {op.upper() for op in table_permission.allowed_operations}
        ):
            if ref.name not in restricted:
                restricted.append(ref.name)
    if restricted:
        raise AccessDeniedError(f"无权限访问以下表: {', '.join(restricted)}", restricted)

    filters: list[tuple[TableRef, str]] = []
    for ref in refs:
        table_permission = policy.table_permission(ref.name)
        predicate = build_row_filter(
            table_permission, user, ref.alias or ref.name.rsplit(".", 1)[-1]
        )
        if predicate and all(existing != (ref, predicate) for existing in filters):
            filters.append((ref, predicate))

    if not filters:
        return AppliedPolicy(modified_sql=sql)

    modified = sql
    blocks = list(iter_select_blocks(sql))
    if len(blocks) == 1:
        for _, predicate in filters:
            modified = add_where_condition(modified, predicate)
    else:
        modified = _wrap_filtered_tables(modified, filters)

    applied = [predicate for _, predicate in filters]
    logger.info(
        f"Applied {len(applied)} row-level filter(s)",
        extra={"user_id": user.user_id, "filters": applied},
    )
    return AppliedPolicy(modified_sql=modified, applied_filters=applied)


def _wrap_filtered_tables(sql: str, filters: list[tuple[TableRef, str]]) -> str:
    """
    Replace each filtered table reference with a filtered derived table, in one
    pass.

    Raises:
        AccessDeniedError: A filtered table reference was not found in the text
    """
    predicates = {
        (ref.name.lower(), (ref.alias or "").lower()): predicate for ref, predicate in filters
    }
    names = sorted({ref.name for ref, _ in filters}, key=len, reverse=True)
    pattern = re.compile(
        r"(\bFROM|\bSTRAIGHT_JOIN|\bJOIN|,|\()(\s*)([`\"]?)"
        rf"({'|'.join(re.escape(n) for n in names)})\3(?![\w.])"
        r"(?:(\s+)(?:AS\s+)?([A-Za-z_]\w*))?",
        re.IGNORECASE,
    )

    def _replace(match: re.Match) -> str:
        keyword, space, quote, name, alias_space, alias = match.groups()
        trailing = ""
        if alias and alias.upper() in SQL_KEYWORDS:
            trailing = f"{alias_space}{alias}"
            alias = None
        predicate = predicates.get((name.lower(), (alias or "").lower()))
        if predicate is None:
            return match.group(0)
        qualifier = alias or name.rsplit(".", 1)[-1]
        wrapped.add((name.lower(), (alias or "").lower()))
        return (
            f"{keyword}{space or ' '}(SELECT * FROM {quote}{name}{quote} {qualifier} WHERE {predicate}) "
            f"{qualifier}{trailing}"
        )

    wrapped: set[tuple[str, str]] = set()
    modified = pattern.sub(_replace, sql)
    missing = sorted({name for name, _ in predicates.keys() - wrapped})
    if missing:
        raise AccessDeniedError(f"无法为以下表应用行级权限: {', '.join(missing)}", missing)
    return modified


# ----------------------------------------------------------------------------
# Layer 2: pre-execution column check
# ----------------------------------------------------------------------------


def enforce_column_access(sql: str, schema: list[Table], policy: CompiledPolicy) -> None:
    """
    Raises:
        SQLPermissionError: reason ``select_star_blocked`` when ``*`` would
            expand over an inaccessible column, ``column_access_blocked`` when
            an inaccessible column is referenced
    """
    if policy.is_admin:
        return

    refs = extract_table_refs(sql)
    tables = list(dict.fromkeys(ref.name for ref in refs))
    alias_map: dict[str, str] = {}
    for ref in refs:
        alias_map.setdefault(ref.name.lower(), ref.name)
        alias_map.setdefault(ref.name.lower().rsplit(".", 1)[-1], ref.name)
        if ref.alias:
            alias_map[ref.alias.lower()] = ref.name
    derived = derived_aliases(sql)

    star_blocked: list[str] = []
    for qualifier in extract_star_qualifiers(sql):
        targets = tables if qualifier is None else [alias_map.get(qualifier.lower())]
        for table in targets:
            if table and policy.inaccessible_columns(table):
                star_blocked.append(table)
    if star_blocked:
        names = ", ".join(dict.fromkeys(star_blocked))
        raise SQLPermissionError(
            f"查询使用了 SELECT *，但表 {names} 包含不可访问的字段，请明确列出需要的字段",
            reason="select_star_blocked",
            blocked_columns=[
                f"{t}.{c}" for t in dict.fromkeys(star_blocked) for c in sorted(policy.inaccessible_columns(t))
            ],
        )

    blocked: list[str] = []
    for ref in extract_column_refs(sql):
        column = ref.column.lower()
        if ref.qualifier:
            qualifier = ref.qualifier.lower()
            if qualifier in derived and qualifier not in alias_map:
                continue
            table = alias_map.get(qualifier)
            candidates = [table] if table else list(tables)
        elif len(tables) == 1:
            candidates = tables
        else:
            owners = []
            for name in tables:
                table = find_table(schema, name)
                if table is not None and table.get_column(ref.column) is not None:
                    owners.append(name)
            candidates = owners or list(tables)
        for table in candidates:
            if column in policy.inaccessible_columns(table):
                label = f"{table}.{ref.column}"
                if label not in blocked:
                    blocked.append(label)

    if blocked:
        logger.warning(f"Blocked inaccessible columns: {blocked}")
        raise SQLPermissionError(
            f"查询引用了不可访问的字段：{', '.join(blocked)}",
            reason="column_access_blocked",
            blocked_columns=blocked,
        )
