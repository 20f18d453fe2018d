"""
PostgreSQL Connector

Async PostgreSQL connector using an asyncpg connection pool.

Usage:
    connector = PostgresConnector(
        host="localhost", port=5432, database="crm", user="bi", password="secret"
    )
    await connector.connect()
    result = await connector.execute("SELECT id, name FROM customers LIMIT 10")
    await connector.close()
"""

import logging
import time

import asyncpg

from chatbi.connectors.base import BaseConnector, ConnectionError, QueryError, QueryResult

logger = logging.getLogger(__name__)


class PostgresConnector(BaseConnector):
    """PostgreSQL connector using asyncpg."""

    dialect = "postgresql"

    async def connect(self) -> None:
        """
        Raises:
            ConnectionError: If connection fails
        """
        if self._connected and self._pool:
            return

        try:
            logger.info(f"Connecting to PostgreSQL at {self.host}:{self.port}/{self.database}")
            self._pool = await asyncpg.create_pool(
                host=self.host,
                port=self.port,
                database=self.database,
                user=self.user,
                password=self.password,
                min_size=1,
                max_size=self.pool_size,
                command_timeout=self.timeout,
                **self.kwargs,
            )
            self._connected = True
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"PostgreSQL connection failed: {e}")
            raise ConnectionError(f"Failed to connect to PostgreSQL: {e}") from e

    async def execute(self, query: str, timeout: int | None = None) -> QueryResult:
        if not self._connected or not self._pool:
            raise ConnectionError("Not connected to database. Call connect() first.")

        start_time = time.perf_counter()
        query_timeout = timeout or self.timeout

        try:
            async with self._pool.acquire() as conn:
                await conn.execute(f"SET statement_timeout = {int(query_timeout * 1000)}")
                statement = await conn.prepare(query)
                records = await statement.fetch()
                columns = [attribute.name for attribute in statement.get_attributes()]
        except asyncpg.QueryCanceledError as e:
            logger.error(f"Query timed out after {query_timeout}s: {query[:100]}...")
            raise QueryError(f"Query timeout ({query_timeout}s): {e}", sql=query) from e
        except asyncpg.PostgresError as e:
            logger.error(f"Query failed: {e}\nQuery: {query[:200]}...")
            raise QueryError(str(e), sql=query) from e

        rows = [dict(record) for record in records]
        execution_time_ms = (time.perf_counter() - start_time) * 1000
        logger.debug(f"Query executed in {execution_time_ms:.2f}ms, returned {len(rows)} rows")
        return QueryResult(
            rows=rows,
            row_count=len(rows),
            columns=columns,
            execution_time_ms=execution_time_ms,
        )

    async def close(self) -> None:
        if not self._pool:
            return
        await self._pool.close()
        self._pool = None
        self._connected = False
        logger.info("PostgreSQL connection closed")
