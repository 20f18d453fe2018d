"""Target-database connectors."""

from chatbi.connectors.base import (
    BaseConnector,
    ConnectionError,
    ConnectorError,
    QueryError,
    QueryResult,
)
from chatbi.connectors.factory import create_connector, infer_database_type

__all__ = [
    "BaseConnector",
    "ConnectionError",
    "ConnectorError",
    "QueryError",
    "QueryResult",
    "create_connector",
    "infer_database_type",
]
