"""
Unit tests for PostgresConnector.

Tests the PostgreSQL connector with mocked asyncpg connections.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import asyncpg
import pytest

from chatbi.connectors.base import ConnectionError, QueryError, QueryResult
from chatbi.connectors.postgres import PostgresConnector


@pytest.fixture
def postgres_config():
    """PostgreSQL connection configuration."""
    return {
        "host": "localhost",
        "port": 5432,
        "database": "testdb",
        "user": "testuser",
        "password": "testpass",
        "pool_size": 5,
        "timeout": 30,
    }


@pytest.fixture
def mock_pool():
    """Mock asyncpg pool whose connections prepare a two-column statement."""
    pool = AsyncMock()

    statement = Mock()
    statement.fetch = AsyncMock(return_value=[])
    statement.get_attributes.return_value = [SimpleNamespace(name="id"), SimpleNamespace(name="name")]

    conn = AsyncMock()
    conn.execute = AsyncMock()
    conn.prepare = AsyncMock(return_value=statement)

    pool.acquire = MagicMock()
    pool.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
    pool.acquire.return_value.__aexit__ = AsyncMock(return_value=False)
    pool.close = AsyncMock()

    return pool, conn, statement


class TestInitialization:
    """Test PostgresConnector initialization."""

    def test_initialization(self, postgres_config):
        connector = PostgresConnector(**postgres_config)

        assert connector.host == "localhost"
        assert connector.database == "testdb"
        assert connector.pool_size == 5
        assert connector.is_connected is False

    def test_repr(self, postgres_config):
        repr_str = repr(PostgresConnector(**postgres_config))

        assert "PostgresConnector" in repr_str
        assert "testuser@localhost:5432/testdb" in repr_str
        assert "disconnected" in repr_str


class TestConnection:
    """Test connection management."""

    @pytest.mark.asyncio
    async def test_connect_idempotent(self, postgres_config, mock_pool):
        """Connecting twice creates one pool."""
        pool, _, _ = mock_pool

        with patch("asyncpg.create_pool", new=AsyncMock(return_value=pool)) as create_pool:
            connector = PostgresConnector(**postgres_config)
            await connector.connect()
            await connector.connect()

        assert connector.is_connected is True
        assert create_pool.call_count == 1
        assert create_pool.call_args.kwargs["command_timeout"] == 30

    @pytest.mark.asyncio
    async def test_connect_failure(self, postgres_config):
        with patch("asyncpg.create_pool", new=AsyncMock(side_effect=OSError("Connection refused"))):
            connector = PostgresConnector(**postgres_config)
            with pytest.raises(ConnectionError, match="Failed to connect to PostgreSQL"):
                await connector.connect()

        assert connector.is_connected is False

    @pytest.mark.asyncio
    async def test_close_idempotent(self, postgres_config, mock_pool):
        pool, _, _ = mock_pool

        with patch("asyncpg.create_pool", new=AsyncMock(return_value=pool)):
            connector = PostgresConnector(**postgres_config)
            await connector.connect()
            await connector.close()
            await connector.close()

        assert connector.is_connected is False
        pool.close.assert_awaited_once()


class TestQueryExecution:
    """Test query execution."""

    @pytest.mark.asyncio
    async def test_execute_returns_columns_and_rows(self, postgres_config, mock_pool):
        pool, conn, statement = mock_pool
        statement.fetch.return_value = [{"id": 1, "name": "Alice"}]

        with patch("asyncpg.create_pool", new=AsyncMock(return_value=pool)):
            connector = PostgresConnector(**postgres_config)
            await connector.connect()
            result = await connector.execute("SELECT id, name FROM users")

        assert isinstance(result, QueryResult)
        assert result.columns == ["id", "name"]
        assert result.rows == [{"id": 1, "name": "Alice"}]
        assert result.row_count == 1
        conn.prepare.assert_awaited_once_with("SELECT id, name FROM users")

    @pytest.mark.asyncio
    async def test_columns_known_for_empty_results(self, postgres_config, mock_pool):
        pool, _, _ = mock_pool

        with patch("asyncpg.create_pool", new=AsyncMock(return_value=pool)):
            connector = PostgresConnector(**postgres_config)
            await connector.connect()
            result = await connector.execute("SELECT id, name FROM users WHERE 1 = 0")

        assert result.row_count == 0
        assert result.columns == ["id", "name"]

    @pytest.mark.asyncio
    async def test_execute_without_connection(self, postgres_config):
        connector = PostgresConnector(**postgres_config)

        with pytest.raises(ConnectionError, match="Not connected"):
            await connector.execute("SELECT 1")

    @pytest.mark.asyncio
    async def test_statement_timeout_is_set(self, postgres_config, mock_pool):
        pool, conn, _ = mock_pool

        with patch("asyncpg.create_pool", new=AsyncMock(return_value=pool)):
            connector = PostgresConnector(**postgres_config)
            await connector.connect()
            await connector.execute("SELECT 1", timeout=60)

        assert conn.execute.call_args_list[0].args[0] == "SET statement_timeout = 60000"

    @pytest.mark.asyncio
    async def test_execute_timeout(self, postgres_config, mock_pool):
        pool, _, statement = mock_pool
        statement.fetch.side_effect = asyncpg.QueryCanceledError("canceling statement due to statement timeout")

        with patch("asyncpg.create_pool", new=AsyncMock(return_value=pool)):
            connector = PostgresConnector(**postgres_config)
            await connector.connect()
            with pytest.raises(QueryError, match="Query timeout"):
                await connector.execute("SELECT pg_sleep(100)")

    @pytest.mark.asyncio
    async def test_driver_error_keeps_message(self, postgres_config, mock_pool):
        pool, conn, _ = mock_pool
        conn.prepare.side_effect = asyncpg.UndefinedColumnError('column "nmae" does not exist')

        with patch("asyncpg.create_pool", new=AsyncMock(return_value=pool)):
            connector = PostgresConnector(**postgres_config)
            await connector.connect()
            with pytest.raises(QueryError, match='column "nmae" does not exist') as exc_info:
                await connector.execute("SELECT nmae FROM users")

        assert exc_info.value.sql == "SELECT nmae FROM users"


class TestContextManager:
    """Test async context manager."""

    @pytest.mark.asyncio
    async def test_context_manager(self, postgres_config, mock_pool):
        pool, _, _ = mock_pool

        with patch("asyncpg.create_pool", new=AsyncMock(return_value=pool)):
            async with PostgresConnector(**postgres_config) as connector:
                assert connector.is_connected is True

        assert connector.is_connected is False
        pool.close.assert_awaited_once()
