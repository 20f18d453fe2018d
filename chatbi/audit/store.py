"""Audit log of executed, failed and blocked queries."""

import json
import logging
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

import asyncpg
from pydantic import BaseModel, Field

from chatbi.config import get_settings

logger = logging.getLogger(__name__)

AuditStatus = Literal["success", "failed", "blocked"]

_CREATE_AUDIT_TABLE = """
CREATE TABLE IF NOT EXISTS audit_logs (
    audit_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    organization_id TEXT,
    session_id TEXT,
    database_connection_id TEXT,
    question TEXT NOT NULL,
    sql TEXT,
    status TEXT NOT NULL,
    error TEXT,
    row_count INTEGER,
    duration_ms DOUBLE PRECISION,
    details JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL
);
"""


class AuditEvent(BaseModel):
    """One query attempt as it ended."""

    user_id: str
    organization_id: str | None = None
    session_id: str | None = None
    database_connection_id: str | None = None
    question: str
    sql: str | None = None
    status: AuditStatus
    error: str | None = None
    row_count: int | None = None
    duration_ms: float | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class AuditLogStore:
    """Append-only audit trail in the system database."""

    def __init__(self, database_url: str | None = None, pool: asyncpg.Pool | None = None) -> None:
        settings = get_settings()
        self._database_url = database_url or (
            str(settings.system_database.url) if settings.system_database.url else None
        )
        self._pool = pool

    async def initialize(self) -> None:
        if self._pool is None:
            if not self._database_url:
                raise ValueError("SYSTEM_DATABASE_URL must be set for audit logging.")
            dsn = self._database_url.replace("postgresql+asyncpg://", "postgresql://", 1)
            self._pool = await asyncpg.create_pool(dsn=dsn, min_size=1, max_size=5)
        await self._pool.execute(_CREATE_AUDIT_TABLE)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def record(self, event: AuditEvent) -> str:
        if self._pool is None:
            raise RuntimeError("AuditLogStore not initialized")
        audit_id = str(uuid4())
        await self._pool.execute(
            """
            INSERT INTO audit_logs (
                audit_id, user_id, organization_id, session_id, database_connection_id,
                question, sql, status, error, row_count, duration_ms, details, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb, $13)
            """,
            audit_id,
            event.user_id,
            event.organization_id,
            event.session_id,
            event.database_connection_id,
            event.question,
            event.sql,
            event.status,
            event.error,
            event.row_count,
            event.duration_ms,
            json.dumps(event.details, ensure_ascii=False, default=str),
            datetime.now(UTC),
        )
        logger.debug(f"Audit {event.status} recorded", extra={"user_id": event.user_id})
        return audit_id
