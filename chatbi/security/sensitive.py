"""
Sensitive-field protection.

Credentials never leave the system, whatever the caller's role or data
permission:

    1. a question asking to see passwords or keys gets a fixed rejection
       before any model call
    2. generated SQL that reads a sensitive column is blocked before
       execution
    3. sensitive columns are dropped from every result set, which covers
       ``SELECT *``
"""

import logging
import re

from chatbi.models.chat import TabularResult
from chatbi.security.policy import SQLPermissionError
from chatbi.utils.sql_inspect import PASSTHROUGH, extract_column_refs, output_column_sources

logger = logging.getLogger(__name__)

SENSITIVE_FIELD_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"password",
        r"passwd",
        r"passphrase",
        r"pwd",
        r"secret",
        r"token",
        r"api[_-]?key",
        r"credential",
        r"private[_-]?key",
        r"密码",
        r"口令",
        r"密钥",
        r"私钥",
        r"凭证",
    )
]

_PASSWORD_KEYWORDS = ("password", "passwd", "pwd", "secret", "token", "密码", "口令", "密钥", "私钥", "凭证")

_QUERY_VERB_RE = re.compile(
    r"输出|显示|查询|查看|列出|获取|返回|\b(?:output|show|display|list|get|return|query|select)\b",
    re.IGNORECASE,
)

_EXPLICIT_PASSWORD_QUERY_RES = [
    re.compile(r"(?:用户名|username).*?(?:密码|password|pwd)", re.IGNORECASE),
    re.compile(r"(?:密码|password|pwd).*?(?:用户名|username)", re.IGNORECASE),
]

PASSWORD_QUERY_REJECTION = (
    "安全限制：禁止查询密码字段\n\n"
    "根据系统安全策略，禁止查询和输出以下敏感字段信息：\n"
    "- password（密码）\n"
    "- pwd（密码）\n"
    "- 以及其他所有密码、密钥、令牌相关字段\n\n"
    "这些信息属于敏感数据，不允许进行查询和展示。如果您需要其他数据，请重新提问。"
)


def is_sensitive_field(name: str | None) -> bool:
    if not name:
        return False
    return any(pattern.search(name) for pattern in SENSITIVE_FIELD_PATTERNS)


def detect_password_query_intent(text: str | None) -> bool:
    """True when the question names a credential and asks to see it."""
    if not text:
        return False
    lowered = text.lower()
    if any(keyword in lowered for keyword in _PASSWORD_KEYWORDS) and _QUERY_VERB_RE.search(text):
        return True
    return any(pattern.search(text) for pattern in _EXPLICIT_PASSWORD_QUERY_RES)


def detect_sensitive_fields_in_sql(sql: str) -> list[str]:
    """Sensitive column names the statement reads, in first-seen order."""
    found: dict[str, str] = {}
    for ref in extract_column_refs(sql):
        if is_sensitive_field(ref.column):
            found.setdefault(ref.column.lower(), ref.column)
    return list(found.values())


def enforce_sensitive_fields(sql: str) -> None:
    """
    Raises:
        SQLPermissionError: reason ``sensitive_field_blocked`` when the
            statement reads a password, key or token column
    """
    fields = detect_sensitive_fields_in_sql(sql)
    if not fields:
        return
    logger.warning(f"Blocked SQL reading sensitive fields: {fields}")
    raise SQLPermissionError(
        f"SQL 查询包含敏感字段（密码相关），不允许查询：{', '.join(fields)}。"
        "请修改 SQL 语句，移除所有密码相关字段（如 password, pwd, passwd 等）。",
        reason="sensitive_field_blocked",
        blocked_columns=fields,
    )


def filter_sensitive_fields(result: TabularResult, sql: str | None = None) -> TabularResult:
    """Drop columns whose name, original name or traced source is sensitive."""
    sources = output_column_sources(sql) if sql else {}
    dropped = []
    for column in result.columns:
        original = result.column_name_map.get(column, column)
        lineage = sources.get(original.lower(), sources.get(PASSTHROUGH, set()))
        if (
            is_sensitive_field(column)
            or is_sensitive_field(original)
            or any(is_sensitive_field(source) for source in lineage)
        ):
            dropped.append(column)
    if not dropped:
        return result

    logger.info(f"Removed sensitive columns from result: {dropped}")
    return result.model_copy(
        update={
            "columns": [c for c in result.columns if c not in dropped],
            "rows": [{k: v for k, v in row.items() if k not in dropped} for row in result.rows],
            "column_name_map": {
                label: original
                for label, original in result.column_name_map.items()
                if label not in dropped
            },
        }
    )
