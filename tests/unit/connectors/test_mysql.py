"""Unit tests for MySQLConnector."""

from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from mysql.connector import Error as MySQLError

from chatbi.connectors.base import ConnectionError, QueryError
from chatbi.connectors.mysql import MySQLConnector


def _install_fake_mysql(monkeypatch, connect_impl: Mock) -> None:
    fake_mysql = SimpleNamespace(
        connector=SimpleNamespace(connect=connect_impl),
    )
    monkeypatch.setattr("chatbi.connectors.mysql.mysql", fake_mysql)


def _build_connection(*, with_rows: bool = True, rows: list[dict] | None = None):
    conn = Mock()
    cursor = Mock()
    conn.cursor.return_value = cursor
    cursor.with_rows = with_rows
    cursor.fetchall.return_value = rows or []
    cursor.description = [("id",), ("name",)]
    return conn, cursor


@pytest.fixture
def connector():
    return MySQLConnector(
        host="localhost",
        port=3306,
        database="app",
        user="root",
        password="secret",
        timeout=5,
    )


@pytest.mark.asyncio
async def test_connect_success(monkeypatch, connector):
    conn, cursor = _build_connection()
    _install_fake_mysql(monkeypatch, Mock(return_value=conn))

    await connector.connect()

    assert connector.is_connected is True
    cursor.execute.assert_called_with("SELECT VERSION()")
    conn.close.assert_called_once()


@pytest.mark.asyncio
async def test_connect_failure_raises_connection_error(monkeypatch, connector):
    _install_fake_mysql(monkeypatch, Mock(side_effect=MySQLError(msg="connection refused")))

    with pytest.raises(ConnectionError, match="Failed to connect to MySQL"):
        await connector.connect()

    assert connector.is_connected is False


@pytest.mark.asyncio
async def test_execute_query_returns_rows(monkeypatch, connector):
    conn1, _ = _build_connection()
    rows = [{"id": 1, "name": "Alice"}, {"id": 2, "name": "Bob"}]
    conn2, cursor2 = _build_connection(rows=rows)
    _install_fake_mysql(monkeypatch, Mock(side_effect=[conn1, conn2]))

    await connector.connect()
    result = await connector.execute("SELECT id, name FROM users")

    assert result.row_count == 2
    assert result.columns == ["id", "name"]
    assert result.rows[0]["id"] == 1
    executed = [call.args[0] for call in cursor2.execute.call_args_list]
    assert executed == ["SET SESSION MAX_EXECUTION_TIME = 5000", "SELECT id, name FROM users"]
    conn2.close.assert_called_once()


@pytest.mark.asyncio
async def test_statement_without_rows(monkeypatch, connector):
    conn1, _ = _build_connection()
    conn2, _ = _build_connection(with_rows=False)
    _install_fake_mysql(monkeypatch, Mock(side_effect=[conn1, conn2]))

    await connector.connect()
    result = await connector.execute("DO 1")

    assert result.row_count == 0
    assert result.columns == []


@pytest.mark.asyncio
async def test_execute_without_connect_raises(monkeypatch, connector):
    _install_fake_mysql(monkeypatch, Mock())

    with pytest.raises(ConnectionError, match="Not connected"):
        await connector.execute("SELECT 1")


@pytest.mark.asyncio
async def test_driver_message_is_kept_verbatim(monkeypatch, connector):
    conn1, _ = _build_connection()
    conn2, cursor2 = _build_connection()
    cursor2.execute.side_effect = [None, MySQLError(msg="Unknown column 'nope' in 'field list'", errno=1054)]
    _install_fake_mysql(monkeypatch, Mock(side_effect=[conn1, conn2]))

    await connector.connect()
    with pytest.raises(QueryError) as exc_info:
        await connector.execute("SELECT nope FROM users")

    assert str(exc_info.value) == "Unknown column 'nope' in 'field list'"
    assert exc_info.value.sql == "SELECT nope FROM users"
    cursor2.close.assert_called_once()
