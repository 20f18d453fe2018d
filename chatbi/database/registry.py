"""Target-database connection registry."""

import json
import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

import asyncpg
from cryptography.fernet import Fernet, InvalidToken
from pydantic import SecretStr

from chatbi.config import get_settings
from chatbi.connectors.base import BaseConnector
from chatbi.connectors.factory import create_connector, resolve_database_type
from chatbi.models.database import DatabaseConnection, PreconfiguredQueryConfig
from chatbi.models.schema import Table

logger = logging.getLogger(__name__)

_CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS database_connections (
    connection_id UUID PRIMARY KEY,
    name TEXT NOT NULL,
    database_url_encrypted TEXT NOT NULL,
    database_type TEXT NOT NULL,
    organization_id TEXT,
    schema_query TEXT,
    schema_metadata JSONB NOT NULL DEFAULT '[]'::jsonb,
    preconfigured_queries JSONB NOT NULL DEFAULT '[]'::jsonb,
    description TEXT,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL,
    schema_cached_at TIMESTAMPTZ
);
"""

_SELECT_COLUMNS = """
    connection_id,
    name,
    database_url_encrypted,
    database_type,
    organization_id,
    schema_query,
    schema_metadata,
    preconfigured_queries,
    description,
    is_active,
    created_at,
    schema_cached_at
"""


class ConnectionRegistry:
    """
    Connections stored in the system database.

    URLs are Fernet-encrypted at rest. Each connection carries its configured
    schema query and the last schema introspected through it, which is the
    degraded-mode fallback when the query returns nothing.
    """

    def __init__(
        self,
        system_database_url: str | None = None,
        encryption_key: str | bytes | None = None,
        pool: asyncpg.Pool | None = None,
    ) -> None:
        settings = get_settings()
        self._system_database_url = system_database_url or (
            str(settings.system_database.url) if settings.system_database.url else None
        )
        self._pool = pool
        self._encryption_key = encryption_key or settings.database_credentials_key
        self._cipher: Fernet | None = None
        self._pool_size = settings.database.pool_size
        self._query_timeout = settings.database.query_timeout

    async def initialize(self) -> None:
        """Initialize connection pool and ensure schema exists."""
        self._ensure_cipher()
        if self._pool is None:
            if not self._system_database_url:
                raise ValueError("SYSTEM_DATABASE_URL must be set for the connection registry.")
            dsn = self._normalize_postgres_url(self._system_database_url)
            self._pool = await asyncpg.create_pool(dsn=dsn, min_size=1, max_size=5)
        await self._pool.execute(_CREATE_TABLE_SQL)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def add_connection(
        self,
        name: str,
        database_url: str,
        database_type: str | None = None,
        organization_id: str | None = None,
        schema_query: str | None = None,
        preconfigured_queries: list[PreconfiguredQueryConfig] | None = None,
        description: str | None = None,
        validate: bool = True,
    ) -> DatabaseConnection:
        """
        Register a connection, optionally checking that it can connect.

        Raises:
            ValueError: Unsupported URL or type
            ConnectionError: Validation could not connect
        """
        self._ensure_pool()
        resolved_type = resolve_database_type(database_type, database_url)
        if validate:
            connector = self._build_connector(database_url, resolved_type)
            try:
                await connector.connect()
            finally:
                await connector.close()

        row = await self._pool.fetchrow(
            f"""
            INSERT INTO database_connections (
                connection_id,
                name,
                database_url_encrypted,
                database_type,
                organization_id,
                schema_query,
                preconfigured_queries,
                description,
                created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9)
            RETURNING {_SELECT_COLUMNS}
            """,
            uuid4(),
            name,
            self._encrypt_url(database_url),
            resolved_type,
            organization_id,
            schema_query,
            json.dumps([q.model_dump() for q in preconfigured_queries or []], ensure_ascii=False),
            description,
            datetime.now(UTC),
        )
        logger.info(f"Registered {resolved_type} connection {name}")
        return self._row_to_connection(row)

    async def list_connections(self, organization_id: str | None = None) -> list[DatabaseConnection]:
        self._ensure_pool()
        if organization_id is None:
            rows = await self._pool.fetch(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM database_connections
                WHERE is_active = TRUE
                ORDER BY created_at DESC
                """
            )
        else:
            rows = await self._pool.fetch(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM database_connections
                WHERE is_active = TRUE AND organization_id = $1
                ORDER BY created_at DESC
                """,
                organization_id,
            )
        return [self._row_to_connection(row) for row in rows]

    async def get_connection(self, connection_id: UUID | str) -> DatabaseConnection:
        """
        Raises:
            KeyError: Unknown or inactive connection
            ValueError: Malformed connection id
        """
        self._ensure_pool()
        row = await self._pool.fetchrow(
            f"""
            SELECT {_SELECT_COLUMNS}
            FROM database_connections
            WHERE connection_id = $1 AND is_active = TRUE
            """,
            self._coerce_uuid(connection_id),
        )
        if row is None:
            raise KeyError(f"Connection not found: {connection_id}")
        return self._row_to_connection(row)

    async def update_schema_cache(self, connection_id: UUID | str, tables: list[Table]) -> None:
        """Remember the last non-empty introspected schema."""
        if not tables:
            return
        self._ensure_pool()
        await self._pool.execute(
            """
            UPDATE database_connections
            SET schema_metadata = $2::jsonb, schema_cached_at = $3
            WHERE connection_id = $1
            """,
            self._coerce_uuid(connection_id),
            json.dumps([t.model_dump() for t in tables], ensure_ascii=False),
            datetime.now(UTC),
        )

    def connector_for(self, connection: DatabaseConnection) -> BaseConnector:
        return self._build_connector(
            connection.database_url.get_secret_value(), connection.database_type
        )

    def _build_connector(self, database_url: str, database_type: str) -> BaseConnector:
        return create_connector(
            database_url=database_url,
            database_type=database_type,
            pool_size=self._pool_size,
            timeout=self._query_timeout,
        )

    def _row_to_connection(self, row: asyncpg.Record) -> DatabaseConnection:
        metadata = self._decode_json_field(row["schema_metadata"]) or []
        queries = self._decode_json_field(row["preconfigured_queries"]) or []
        return DatabaseConnection(
            connection_id=row["connection_id"],
            name=row["name"],
            database_url=SecretStr(self._decrypt_url(row["database_url_encrypted"])),
            database_type=row["database_type"],
            organization_id=row["organization_id"],
            schema_query=row["schema_query"],
            schema_metadata=[Table.model_validate(t) for t in metadata],
            preconfigured_queries=[PreconfiguredQueryConfig.model_validate(q) for q in queries],
            description=row["description"],
            is_active=row["is_active"],
            created_at=row["created_at"],
            schema_cached_at=row["schema_cached_at"],
        )

    def _encrypt_url(self, database_url: str) -> str:
        cipher = self._ensure_cipher()
        return cipher.encrypt(database_url.encode("utf-8")).decode("utf-8")

    def _decrypt_url(self, encrypted_url: str) -> str:
        cipher = self._ensure_cipher()
        try:
            return cipher.decrypt(encrypted_url.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Failed to decrypt database URL.") from exc

    def _ensure_cipher(self) -> Fernet:
        if self._cipher is not None:
            return self._cipher
        if not self._encryption_key:
            raise ValueError(
                "DATABASE_CREDENTIALS_KEY must be set to store encrypted database URLs."
            )
        key = self._encryption_key
        if isinstance(key, str):
            key = key.encode("utf-8")
        try:
            self._cipher = Fernet(key)
        except (ValueError, TypeError) as exc:
            raise ValueError(
                "Invalid DATABASE_CREDENTIALS_KEY. Use a Fernet-compatible base64 key."
            ) from exc
        return self._cipher

    def _ensure_pool(self) -> None:
        if self._pool is None:
            raise RuntimeError("ConnectionRegistry is not initialized")

    @staticmethod
    def _coerce_uuid(connection_id: UUID | str) -> UUID:
        if isinstance(connection_id, UUID):
            return connection_id
        try:
            return UUID(str(connection_id))
        except ValueError as exc:
            raise ValueError("Invalid connection ID.") from exc

    @staticmethod
    def _decode_json_field(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return None
        return value

    @staticmethod
    def _normalize_postgres_url(database_url: str) -> str:
        if database_url.startswith("postgresql+asyncpg://"):
            return database_url.replace("postgresql+asyncpg://", "postgresql://", 1)
        return database_url
