"""
ExecutionGateway: the only path from generated SQL to the target database.

Order of operations for every statement:

    1. enforce_sensitive_fields (credential columns, blocked for every role)
    2. enforce_column_access    (hard block, never retried)
    3. apply_to_sql             (table/operation check + row-level predicates)
    4. connector.execute        (timeout-bounded, driver message kept verbatim)
    5. apply_masking            (post-execution redaction)
    6. filter_sensitive_fields  (drops credential columns a star let through)

The admin role passes through 2, 3 and 5 untouched.
"""

import asyncio
import logging
import time
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from chatbi.connectors.base import BaseConnector, QueryError
from chatbi.models.agent import DatabaseExecutionError
from chatbi.models.chat import TabularResult, UserContext
from chatbi.models.policy import CompiledPolicy
from chatbi.models.schema import Table
from chatbi.security.masking import apply_masking
from chatbi.security.policy import (
    AccessDeniedError,
    SQLPermissionError,
    apply_to_sql,
    enforce_column_access,
)
from chatbi.security.sensitive import enforce_sensitive_fields, filter_sensitive_fields

logger = logging.getLogger(__name__)


class ExecutionOutcome(BaseModel):
    """What one gated execution produced."""

    sql: str = Field(..., description="Statement as generated")
    executed_sql: str = Field(..., description="Statement after row-level rewriting")
    result: TabularResult
    applied_filters: list[str] = Field(default_factory=list)
    execution_time_ms: float = 0.0
    was_truncated: bool = False


def json_safe(value: Any) -> Any:
    """Convert driver values into JSON-friendly primitives."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    return value


class ExecutionGateway:
    """
    Applies the access policy around a connector call.

    Args:
        max_rows: Rows kept in the returned result
        timeout_seconds: Upper bound for one statement
        masking_salt: Salt for hash masking
    """

    def __init__(self, max_rows: int = 1000, timeout_seconds: int = 30, masking_salt: str = ""):
        self.max_rows = max_rows
        self.timeout_seconds = timeout_seconds
        self.masking_salt = masking_salt or "default-masking-salt"

    async def run(
        self,
        connector: BaseConnector,
        sql: str,
        policy: CompiledPolicy,
        user: UserContext,
        schema: list[Table],
    ) -> ExecutionOutcome:
        """
        Execute ``sql`` under ``policy``.

        Raises:
            SQLPermissionError: An inaccessible or sensitive column is referenced
            AccessDeniedError: A table or operation is not permitted
            DatabaseExecutionError: The database rejected the statement
        """
        try:
            enforce_sensitive_fields(sql)
            enforce_column_access(sql, schema, policy)
            applied = apply_to_sql(sql, policy, user)
        except (SQLPermissionError, AccessDeniedError) as e:
            e.context.setdefault("sql", sql)
            raise

        raw, elapsed_ms = await self.execute_raw(connector, applied.modified_sql)
        rows = [{key: json_safe(value) for key, value in row.items()} for row in raw.rows]
        was_truncated = len(rows) > self.max_rows
        if was_truncated:
            rows = rows[: self.max_rows]

        result = TabularResult(columns=list(raw.columns), rows=rows)
        result = apply_masking(result, policy, self.masking_salt, sql)
        result = filter_sensitive_fields(result, sql)

        logger.info(
            f"Executed query: {len(rows)} rows in {elapsed_ms:.1f}ms",
            extra={
                "user_id": user.user_id,
                "row_count": len(rows),
                "truncated": was_truncated,
                "filters": applied.applied_filters,
            },
        )
        return ExecutionOutcome(
            sql=sql,
            executed_sql=applied.modified_sql,
            result=result,
            applied_filters=applied.applied_filters,
            execution_time_ms=elapsed_ms,
            was_truncated=was_truncated,
        )

    async def execute_raw(self, connector: BaseConnector, sql: str):
        """
        Run a statement with no policy applied. Used for lookups whose tables
        have already been checked by the caller.

        Raises:
            DatabaseExecutionError: Driver error, message preserved verbatim
        """
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                connector.execute(sql, timeout=self.timeout_seconds),
                timeout=self.timeout_seconds + 5,
            )
        except QueryError as e:
            raise DatabaseExecutionError(e.driver_message, sql=sql) from e
        except TimeoutError as e:
            raise DatabaseExecutionError(
                f"查询执行超时（超过 {self.timeout_seconds} 秒）", sql=sql
            ) from e
        return result, (time.perf_counter() - start) * 1000
