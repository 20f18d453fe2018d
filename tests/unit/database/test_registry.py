"""Unit tests for the target-database connection registry."""

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch
from uuid import UUID

import pytest
from cryptography.fernet import Fernet

from chatbi.connectors.base import ConnectionError as ConnectorConnectionError
from chatbi.database.registry import ConnectionRegistry
from chatbi.models.database import PreconfiguredQueryConfig
from chatbi.models.schema import Column, Table

CONNECTION_ID = UUID("3a1f2d3e-4b5c-6d7e-8f90-1234567890ab")


def _row_from_insert(sql, connection_id, name, encrypted, database_type, organization_id,
                     schema_query, queries, description, created_at):
    return {
        "connection_id": connection_id,
        "name": name,
        "database_url_encrypted": encrypted,
        "database_type": database_type,
        "organization_id": organization_id,
        "schema_query": schema_query,
        "schema_metadata": "[]",
        "preconfigured_queries": queries,
        "description": description,
        "is_active": True,
        "created_at": created_at,
        "schema_cached_at": None,
    }


@pytest.fixture
def pool():
    pool = AsyncMock()
    pool.fetchrow.side_effect = _row_from_insert
    return pool


@pytest.fixture
def registry(pool):
    return ConnectionRegistry(pool=pool, encryption_key=Fernet.generate_key())


class TestConnectionRegistry:
    """Tests for storing and loading connections."""

    @pytest.mark.asyncio
    async def test_url_is_encrypted_at_rest(self, registry, pool):
        connection = await registry.add_connection(
            name="shop",
            database_url="mysql://reader:secret@db:3306/shop",
            schema_query="SELECT table_name, column_name FROM information_schema.columns",
            preconfigured_queries=[PreconfiguredQueryConfig(name="daily", sql="SELECT 1")],
            validate=False,
        )

        stored = pool.fetchrow.await_args.args[3]
        assert "secret" not in stored
        assert connection.database_url.get_secret_value() == "mysql://reader:secret@db:3306/shop"
        assert connection.database_type == "mysql"
        assert connection.preconfigured_queries[0].name == "daily"

    @pytest.mark.asyncio
    async def test_add_validates_connectivity(self, registry, mock_connector):
        mock_connector.connect.side_effect = ConnectorConnectionError("refused")

        with patch.object(registry, "_build_connector", return_value=mock_connector):
            with pytest.raises(ConnectorConnectionError):
                await registry.add_connection(name="x", database_url="postgresql://db/x")

        mock_connector.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unsupported_scheme(self, registry):
        with pytest.raises(ValueError, match="Unsupported"):
            await registry.add_connection(name="x", database_url="sqlite:///x.db", validate=False)

    @pytest.mark.asyncio
    async def test_get_unknown_connection(self, registry, pool):
        pool.fetchrow.side_effect = None
        pool.fetchrow.return_value = None

        with pytest.raises(KeyError):
            await registry.get_connection(CONNECTION_ID)

    @pytest.mark.asyncio
    async def test_get_malformed_id(self, registry):
        with pytest.raises(ValueError, match="Invalid connection ID"):
            await registry.get_connection("not-a-uuid")

    @pytest.mark.asyncio
    async def test_cached_schema_is_decoded(self, registry, pool):
        encrypted = Fernet(registry._encryption_key).encrypt(b"postgresql://db/crm").decode()
        pool.fetchrow.side_effect = None
        pool.fetchrow.return_value = {
            "connection_id": CONNECTION_ID,
            "name": "crm",
            "database_url_encrypted": encrypted,
            "database_type": "postgresql",
            "organization_id": None,
            "schema_query": None,
            "schema_metadata": json.dumps([{"name": "customers", "columns": [{"name": "id"}]}]),
            "preconfigured_queries": [],
            "description": None,
            "is_active": True,
            "created_at": datetime(2026, 1, 1, tzinfo=UTC),
            "schema_cached_at": datetime(2026, 1, 2, tzinfo=UTC),
        }

        connection = await registry.get_connection(str(CONNECTION_ID))

        assert connection.schema_metadata[0].name == "customers"
        assert connection.schema_metadata[0].columns[0].name == "id"

    @pytest.mark.asyncio
    async def test_schema_cache_ignores_empty_schema(self, registry, pool):
        await registry.update_schema_cache(CONNECTION_ID, [])

        pool.execute.assert_not_awaited()

        await registry.update_schema_cache(
            CONNECTION_ID, [Table(name="customers", columns=[Column(name="id")])]
        )

        args = pool.execute.await_args.args
        assert args[1] == CONNECTION_ID
        assert json.loads(args[2])[0]["name"] == "customers"

    @pytest.mark.asyncio
    async def test_missing_key_is_rejected(self, pool):
        registry = ConnectionRegistry(pool=pool, encryption_key=None)

        with pytest.raises(ValueError, match="DATABASE_CREDENTIALS_KEY"):
            await registry.initialize()
