"""
MySQL Connector

The mysql-connector-python driver is synchronous, so statements run in worker
threads via asyncio.to_thread.
"""

import asyncio
import logging
import time
from typing import Any

import mysql.connector
from mysql.connector import Error as MySQLError

from chatbi.connectors.base import BaseConnector, ConnectionError, QueryError, QueryResult

logger = logging.getLogger(__name__)


class MySQLConnector(BaseConnector):
    """MySQL database connector using mysql-connector-python."""

    dialect = "mysql"

    def __init__(
        self,
        host: str,
        port: int = 3306,
        database: str = "",
        user: str = "root",
        password: str = "",
        pool_size: int = 5,
        timeout: int = 30,
        **kwargs,
    ) -> None:
        super().__init__(
            host=host,
            port=port,
            database=database,
            user=user,
            password=password,
            pool_size=pool_size,
            timeout=timeout,
            **kwargs,
        )

    async def connect(self) -> None:
        """Validate connection credentials."""
        if self._connected:
            return
        try:
            await asyncio.to_thread(self._test_connection_sync)
            self._connected = True
        except MySQLError as exc:
            logger.error(f"MySQL connection failed: {exc}")
            raise ConnectionError(f"Failed to connect to MySQL: {exc}") from exc

    async def execute(self, query: str, timeout: int | None = None) -> QueryResult:
        if not self._connected:
            raise ConnectionError("Not connected to database. Call connect() first.")

        start_time = time.perf_counter()
        query_timeout = timeout or self.timeout
        try:
            rows, columns = await asyncio.to_thread(self._execute_sync, query, query_timeout)
        except MySQLError as exc:
            logger.error(f"MySQL query failed: {exc}\nQuery: {query[:200]}...")
            # msg keeps the server text, e.g. "Unknown column 'x' in 'field list'"
            raise QueryError(getattr(exc, "msg", None) or str(exc), sql=query) from exc

        execution_time_ms = (time.perf_counter() - start_time) * 1000
        return QueryResult(
            rows=rows,
            row_count=len(rows),
            columns=columns,
            execution_time_ms=execution_time_ms,
        )

    async def close(self) -> None:
        self._connected = False

    def _connection_kwargs(self, query_timeout: int | None = None) -> dict[str, Any]:
        kwargs = {
            "host": self.host,
            "port": self.port,
            "database": self.database or None,
            "user": self.user,
            "password": self.password,
            "autocommit": True,
            "connection_timeout": query_timeout or self.timeout,
        }
        kwargs.update(self.kwargs)
        return kwargs

    def _test_connection_sync(self) -> None:
        conn = mysql.connector.connect(**self._connection_kwargs())
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT VERSION()")
            cursor.fetchone()
            cursor.close()
        finally:
            conn.close()

    def _execute_sync(
        self, query: str, query_timeout: int
    ) -> tuple[list[dict[str, Any]], list[str]]:
        conn = mysql.connector.connect(**self._connection_kwargs(query_timeout))
        cursor = conn.cursor(dictionary=True)
        try:
            cursor.execute(f"SET SESSION MAX_EXECUTION_TIME = {int(query_timeout * 1000)}")
            cursor.execute(query)
            if not cursor.with_rows:
                return [], []
            rows = cursor.fetchall()
            columns = [col[0] for col in cursor.description]
            return rows, columns
        finally:
            cursor.close()
            conn.close()
