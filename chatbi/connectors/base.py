"""
Base Database Connector

Abstract base class for target-database connectors. The pipeline treats a
connector as a black box: given a SQL string it returns column names plus row
objects, or raises ``QueryError`` carrying the driver's original message.

All connectors must implement:
- connect(): Establish the connection (pool or credential check)
- execute(): Run a statement with an optional timeout
- close(): Release resources
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class QueryResult(BaseModel):
    """Result from query execution."""

    rows: list[dict[str, Any]] = Field(..., description="Query result rows")
    row_count: int = Field(..., description="Number of rows returned")
    columns: list[str] = Field(..., description="Column names")
    execution_time_ms: float = Field(default=0.0, description="Query execution time in ms")


class ConnectorError(Exception):
    """Base exception for connector errors."""


class ConnectionError(ConnectorError):
    """Error establishing or managing database connection."""


class QueryError(ConnectorError):
    """
    Error executing a query.

    ``str(error)`` is the driver's message verbatim; the self-correction loop
    pattern-matches it for unknown column/table errors.
    """

    def __init__(self, driver_message: str, sql: str | None = None):
        super().__init__(driver_message)
        self.driver_message = driver_message
        self.sql = sql


class BaseConnector(ABC):
    """
    Abstract base class for database connectors.

    Usage:
        async with create_connector(database_url=url) as connector:
            result = await connector.execute("SELECT id, name FROM customers")
            print(result.columns, result.row_count)
    """

    dialect: str = "sql"

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        pool_size: int = 5,
        timeout: int = 30,
        **kwargs,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.pool_size = pool_size
        self.timeout = timeout
        self.kwargs = kwargs

        self._pool = None
        self._connected = False

        logger.debug(f"Initialized {self.__class__.__name__} for {user}@{host}:{port}/{database}")

    @abstractmethod
    async def connect(self) -> None:
        """
        Establish the connection. Idempotent.

        Raises:
            ConnectionError: If connection fails
        """

    @abstractmethod
    async def execute(self, query: str, timeout: int | None = None) -> QueryResult:
        """
        Execute a SQL statement.

        Raises:
            QueryError: The database rejected the statement or it timed out
            ConnectionError: If not connected
        """

    @abstractmethod
    async def close(self) -> None:
        """Release resources. Safe to call multiple times."""

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    def __repr__(self) -> str:
        status = "connected" if self._connected else "disconnected"
        return f"<{self.__class__.__name__} {self.user}@{self.host}:{self.port}/{self.database} ({status})>"
