"""Storage for role-level data permissions."""

import json
import logging
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import asyncpg

from chatbi.config import get_settings
from chatbi.models.policy import DataPermission, TablePermission

logger = logging.getLogger(__name__)

_CREATE_PERMISSIONS_TABLE = """
CREATE TABLE IF NOT EXISTS data_permissions (
    permission_id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    role TEXT NOT NULL,
    organization_id TEXT,
    database_connection_id TEXT NOT NULL,
    table_permissions JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
"""

_CREATE_PERMISSIONS_LOOKUP_INDEX = """
CREATE INDEX IF NOT EXISTS data_permissions_lookup_idx
ON data_permissions (database_connection_id, role);
"""


class PermissionStore:
    """Data permissions per (organization, connection, role)."""

    def __init__(self, database_url: str | None = None, pool: asyncpg.Pool | None = None) -> None:
        settings = get_settings()
        self._database_url = database_url or (
            str(settings.system_database.url) if settings.system_database.url else None
        )
        self._pool = pool

    async def initialize(self) -> None:
        if self._pool is None:
            if not self._database_url:
                raise ValueError("SYSTEM_DATABASE_URL must be set for permission storage.")
            dsn = self._normalize_postgres_url(self._database_url)
            self._pool = await asyncpg.create_pool(dsn=dsn, min_size=1, max_size=5)
        await self._pool.execute(_CREATE_PERMISSIONS_TABLE)
        await self._pool.execute(_CREATE_PERMISSIONS_LOOKUP_INDEX)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_permission(
        self, *, organization_id: str | None, connection_id: str, role: str
    ) -> DataPermission | None:
        """Newest permission for the role on the connection, or None."""
        self._ensure_pool()
        row = await self._pool.fetchrow(
            """
            SELECT permission_id, name, role, organization_id, database_connection_id,
                   table_permissions
            FROM data_permissions
            WHERE database_connection_id = $1
              AND role = $2
              AND ($3::text IS NULL OR organization_id IS NULL OR organization_id = $3)
            ORDER BY updated_at DESC
            LIMIT 1
            """,
            str(connection_id),
            role,
            organization_id,
        )
        if row is None:
            return None
        return self._row_to_permission(row)

    async def save_permission(self, permission: DataPermission) -> DataPermission:
        self._ensure_pool()
        now = datetime.now(UTC)
        permission_id = permission.id or str(uuid4())
        await self._pool.execute(
            """
            INSERT INTO data_permissions (
                permission_id, name, role, organization_id, database_connection_id,
                table_permissions, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $7)
            ON CONFLICT (permission_id) DO UPDATE SET
                name = EXCLUDED.name,
                role = EXCLUDED.role,
                organization_id = EXCLUDED.organization_id,
                database_connection_id = EXCLUDED.database_connection_id,
                table_permissions = EXCLUDED.table_permissions,
                updated_at = EXCLUDED.updated_at
            """,
            permission_id,
            permission.name,
            permission.role,
            permission.organization_id,
            permission.database_connection_id,
            json.dumps([t.model_dump() for t in permission.table_permissions], ensure_ascii=False),
            now,
        )
        logger.info(
            f"Saved data permission for role {permission.role}",
            extra={"connection_id": permission.database_connection_id},
        )
        return permission.model_copy(update={"id": permission_id})

    def _ensure_pool(self) -> None:
        if self._pool is None:
            raise RuntimeError("PermissionStore not initialized")

    @staticmethod
    def _normalize_postgres_url(url: str) -> str:
        if url.startswith("postgresql+asyncpg://"):
            return "postgresql://" + url[len("postgresql+asyncpg://") :]
        return url

    @staticmethod
    def _decode_json_field(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return None
        return value

    @classmethod
    def _row_to_permission(cls, row: asyncpg.Record) -> DataPermission:
        tables = cls._decode_json_field(row["table_permissions"]) or []
        return DataPermission(
            id=str(row["permission_id"]),
            name=str(row["name"] or ""),
            role=str(row["role"]),
            organization_id=row["organization_id"],
            database_connection_id=str(row["database_connection_id"]),
            table_permissions=[TablePermission.model_validate(t) for t in tables],
        )
